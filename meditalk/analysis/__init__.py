"""
LLM-backed analysis helpers for finished consultations.

Design intent:
- Keep prompts and answer parsing out of the workflow and API layers.
- Treat every model answer as untrusted text until parsed and validated.
"""
