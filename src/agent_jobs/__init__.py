"""Background job and multi-stage workflow orchestration for AI-backed tasks."""

__version__ = "0.1.0"
