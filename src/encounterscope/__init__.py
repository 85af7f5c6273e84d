"""EncounterScope - progressive encounter extraction for long scanned medical records.

Splits OCR'd documents into page chunks, runs one inference call per chunk
with a compact handoff carried forward, tracks encounters that cascade
across chunk boundaries, and reconciles the partial records into final
encounters once every chunk has been processed.
"""

__version__ = "0.1.0"
