"""Allow running as python -m noobtunnel."""

from noobtunnel.cli import main

if __name__ == "__main__":
    main()
