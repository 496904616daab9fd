"""FlowBot CLI - validate, inspect and simulate conversation flows."""

__version__ = "1.0.0"
