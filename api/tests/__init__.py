"""
Test suite for the STL import bridge.

Provides:
- Unit tests for the job state machine, channel, stores and decoder
- HTTP and WebSocket tests against the FastAPI app
- End-to-end bridge scenarios with in-process transports
"""
