"""
Pickup (PUDO) module.

Scope:
- Package intake and the status lifecycle (in_giacenza -> ritirato / in_giacenza_scaduto)
- One-time pickup codes
- Storage expiration sweep with customer warnings
- Check-in QR artifact
- Customer portal reports linked to packages

Hard constraints:
- Status changes only through the transition table (status.py)
- Package history is append-only
"""
