"""
Transcript module boundary for medscribe.

Design intent:
- Hold the segment contracts every backend returns.
- Attribute speaker roles from text and conversation context only.
- Merge repeated chunk results into one ordered, duplicate-free transcript.
"""
