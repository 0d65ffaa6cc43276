from __future__ import annotations

from homepost_client.cli import main

if __name__ == "__main__":
    main()
