"""
Domain Services Package

Architectural Intent:
- Pure graph logic: expressions, graph building, conditional resolution,
  scheduling, diffing and state/output resolution
- Modules are imported directly; nothing is re-exported here
"""
