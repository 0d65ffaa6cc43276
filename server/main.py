from __future__ import annotations

from homepost.cli import main

if __name__ == "__main__":
    main()
