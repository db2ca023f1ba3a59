"""Entry point for running mocli as a module.

Usage:
    python -m mocli auth status
    python -m mocli --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from mocli.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
