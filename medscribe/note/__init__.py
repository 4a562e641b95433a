"""
Clinical documentation boundary for medscribe.

Design intent:
- Turn transcript segments into a structured SOAP note and entity list.
- Absorb model failures; a heuristic note is always returned.
- Keep note updates incremental while a session is recording.
"""
