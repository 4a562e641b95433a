"""
Encounter session boundary for medscribe.

Design intent:
- Own the recording lifecycle (create, start, pause, resume, stop, finalize, delete).
- Pull buffered audio on a timer, transcribe it with fallback, and keep one clean transcript.
- Report every state change through typed event channels.
"""
