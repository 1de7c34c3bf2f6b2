"""Setup script for the marketing decision pipeline package."""

from setuptools import setup, find_packages

setup(
    name="marketing-pipeline",
    version="0.1.0",
    packages=find_packages(include=["marketing_pipeline", "marketing_pipeline.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "tenacity>=8.2",
        "prometheus-client>=0.19",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "asyncpg>=0.29",
        "numpy>=1.26",
    ],
    extras_require={
        "test": ["pytest>=7.4", "pytest-asyncio>=0.23"],
    },
    description="Marketing Decision Pipeline - multi-agent budget and creative orchestration",
    author="NeuraForge Team",
)
