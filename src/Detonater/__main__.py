"""Allow ``python -m Detonater``."""

from .cli import main

if __name__ == "__main__":  # pragma: no cover - exercised via the console script
    main()
