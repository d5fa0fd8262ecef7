"""
Infrastructure Layer
=====================

Low-level technical concerns shared by the engine:
- Logging setup
- Event dispatch
- Metrics export (Grafana OTLP)
"""
