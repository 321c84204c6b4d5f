"""
Infrastructure Adapters Package

Architectural Intent:
- Control-plane providers (simulated, HTTP) and pipeline step runners
  (local subprocess, Fabric/SSH)
- Modules are imported directly so Fabric is only loaded when a remote
  runner is configured
"""
