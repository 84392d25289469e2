"""Infrastructure layer package.

Implements Port interfaces with concrete adapters (git, files on disk).
The verification core MUST NOT import from this package directly; only the
composition root wires adapters in.
"""
