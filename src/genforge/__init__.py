"""genforge - multi-phase LLM code generation with context selection and auto-fix."""

__version__ = "0.1.0"
