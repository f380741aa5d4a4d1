"""Module entrypoint.

Allows:
    python -m logai_triage_server
"""

from __future__ import annotations

from logai_triage_server.server.triage_server import main

if __name__ == "__main__":
    main()
