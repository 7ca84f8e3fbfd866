"""Entry point for running the service as a module.

Usage:
    python -m autoreply validate-config
    python -m autoreply --help
"""

from dotenv import load_dotenv

load_dotenv()  # Account passwords may come from .env via password_env

from autoreply.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
