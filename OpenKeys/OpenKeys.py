from __future__ import annotations

from openkeys.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
