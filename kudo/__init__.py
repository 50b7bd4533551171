"""Plan execution engine for operator instances: templates, tasks and plan status."""

__version__ = "0.1.0"

__all__ = ["clog", "models", "plan_execution", "tasks", "template_engine"]