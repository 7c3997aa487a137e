"""flowkeeper - supervisor for long-running, self-healing workflow programs."""

__version__ = "0.1.0"
