"""Allow running as ``python -m kidsafe_agent``."""

from .cli import main

if __name__ == "__main__":
    main()
