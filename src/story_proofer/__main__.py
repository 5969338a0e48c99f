"""Allow ``python -m story_proofer``."""

from story_proofer.cli import app

if __name__ == "__main__":
    app()
