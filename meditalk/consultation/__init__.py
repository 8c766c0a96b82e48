"""
Consultation session core.

Design intent:
- Keep the stage machine, transcript log and end-of-session waiter free of I/O.
- Reach storage and AI services only through injected collaborators.
"""
