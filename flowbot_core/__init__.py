"""
FlowBot Core
============

Conversation flow graph engine for the chatbot / WhatsApp automation
platform.

This package provides:
- Flow graph model (typed nodes and conditional edges) and validation
- Condition evaluation for edge dispatch
- A resumable execution engine driven by inbound conversation events
- Presentation projections for the visual flow builder
"""

__version__ = "1.0.0"
