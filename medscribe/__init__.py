"""
medscribe package.

Design intent:
- Drive a recorded clinical encounter from start to stop without a server.
- Keep transcription backends, persistence and note generation behind small interfaces.
- Compose instances explicitly (see `medscribe.app`); no module-level singletons.
"""
