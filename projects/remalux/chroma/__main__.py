"""Allow ``python -m chroma`` to launch the live CLI."""

from __future__ import annotations

from chroma.live.cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
