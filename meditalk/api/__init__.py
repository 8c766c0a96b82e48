"""
API orchestration boundary for the MediTalk backend.

Design intent:
- Expose thin, typed endpoints for the consultation workflow and record history.
- Keep request validation explicit and failure modes predictable.
- Orchestrate modules without embedding domain logic in routers.
"""
