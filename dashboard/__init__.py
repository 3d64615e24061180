"""
Dashboard Package.

FastAPI admin surface over the trading engine.

Modules:
- main: create_app() and error mapping
- schemas: request and response models
- dependencies: engine and service lookups
- routers/: positions, executions, reconciliation, scheduler,
  signals, accounts, health
"""
