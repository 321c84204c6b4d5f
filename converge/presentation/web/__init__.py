"""
Web presentation layer for converge.

Architectural Intent:
- Browser-readable status page for the recorded state and run history
- Push webhook that triggers the build pipeline
- Uses Python stdlib only (http.server + asyncio)
- Complements the CLI and TUI interfaces with a web-accessible option
"""
