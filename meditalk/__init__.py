"""
MediTalk backend package.

Design intent:
- Record a clinician-patient conversation, transcribe it, and keep it as a consultation record.
- Keep the consultation core (consultation/) independent from transport and AI vendors.
"""
