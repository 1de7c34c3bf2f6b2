from __future__ import annotations

from typing import Any

from ..agents.auditor import ComplianceAuditor
from ..agents.creative import PlatformCreative
from ..agents.research import StatisticalResearcher
from ..agents.strategist import MonteCarloStrategist
from ..core.config import Settings, get_settings
from ..core.logging import configure_logging, get_logger
from ..orchestration.circuit_breaker import BudgetLedger
from ..orchestration.manager import TaskManager
from ..orchestration.pipeline import Orchestrator
from ..orchestration.review import ReviewManager
from .decision_log import DecisionLogger, DecisionLogStore, build_decision_log_store
from .forecasting import ROIPredictionEngine
from .llm import InferenceService
from .tenants import InMemoryTenantDataProvider, TenantDataProvider
from .timeseries import TimeSeriesAggregator

logger = get_logger(name=__name__)


def build_orchestrator(
    settings: Settings | None = None,
    *,
    inference_client: Any | None = None,
    use_inference: bool = True,
    tenant_data: TenantDataProvider | None = None,
    aggregator: TimeSeriesAggregator | None = None,
    decision_log_store: DecisionLogStore | None = None,
    ledger: BudgetLedger | None = None,
    review_manager: ReviewManager | None = None,
) -> Orchestrator:
    """Wire the default agents and stores from settings."""
    settings = settings or get_settings()
    llm = InferenceService.from_settings(settings.inference, client=inference_client) if use_inference else None
    store = decision_log_store or build_decision_log_store(settings)
    forecaster = ROIPredictionEngine(settings.forecast)
    decision_logger = DecisionLogger(store)
    ledger = ledger or BudgetLedger()
    logger.info(
        "pipeline_bootstrap",
        environment=settings.environment,
        decision_log=type(store).__name__,
        inference_model=llm.model if llm is not None else None,
    )
    return Orchestrator(
        researcher=StatisticalResearcher(
            settings.research,
            llm=llm,
            tenant_data=tenant_data or InMemoryTenantDataProvider(),
        ),
        strategist=MonteCarloStrategist(settings.strategy, llm=llm, forecaster=forecaster),
        creative=PlatformCreative(settings.creative, llm=llm),
        auditor=ComplianceAuditor(settings.auditor, llm=llm),
        decision_logger=decision_logger,
        aggregator=aggregator or TimeSeriesAggregator(settings.aggregator.granularities),
        forecaster=forecaster,
        ledger=ledger,
        review_manager=review_manager or ReviewManager(decision_logger=decision_logger, ledger=ledger),
        settings=settings,
    )


def build_task_manager(settings: Settings | None = None, **components: Any) -> TaskManager:
    settings = settings or get_settings()
    configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)
    return TaskManager(
        orchestrator=build_orchestrator(settings, **components),
        retention_seconds=settings.tasks.result_retention_seconds,
    )
