"""
TrailGuard - Signal-Driven Position Guard

Opens leveraged positions on streamed signals (when market sentiment allows)
and protects every open position with a debounced take-profit / stop-loss /
trailing-stop state machine.

Packages:
- config: Settings resolver (config.yaml + .env, fail closed)
- execution: Execution gateway contract, live HTTP and paper gateways
- sentiment: Market sentiment gate
- signals: Signal stream subscription and bounded queue
- position: Risk state, risk algorithm, per-symbol position manager
- orchestrator: Startup reconciliation, dispatch, health checks
"""

__version__ = "1.0.0"
