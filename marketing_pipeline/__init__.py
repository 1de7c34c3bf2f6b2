"""Marketing decision pipeline: research, strategy, creative and audit agents under one state machine."""

__version__ = "0.1.0"
