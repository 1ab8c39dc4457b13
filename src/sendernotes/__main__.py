"""Entry point for running Sender Notes as a module.

Usage:
    python -m sendernotes validate-config
    python -m sendernotes --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from sendernotes.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
