"""toolrelay - local tool-orchestration runtime.

A JSON-RPC server over stdio that aggregates the tools of several child
provider processes, adds a sandboxed multi-language ``execute`` tool, and
keeps a token-bounded history of completed calls.
"""

__version__ = "0.1.0"
