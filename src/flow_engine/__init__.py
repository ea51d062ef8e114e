"""Flow engine.

Evaluates declarative step graphs for running workflow instances and plans
the automatable jobs that should be dispatched next:
- a resolver that validates flow definitions once at startup
- a pure evaluator computing ``blocked`` / ``ready`` / ``done`` per step
- a pure planner deriving the jobs to dispatch
- a runtime, REST API and CLI around them
"""

__version__ = "0.1.0"

from flow_engine.config import FlowEngineSettings

__all__ = ["__version__", "FlowEngineSettings"]
