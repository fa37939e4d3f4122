"""RoleGraph API service.

Main components:
- main.py: FastAPI application and health endpoints
- routers/: pipeline, graph and progress endpoints
- orchestrators/: LangGraph pipeline state machine
- agents/: the generation stages
- tools/: graph building, repair, reduction and search
"""

# Avoid importing heavy modules (e.g., FastAPI app) at package import time.
__all__ = []
