"""CLI entry point for python -m vidweave"""
from vidweave.cli.commands import app

if __name__ == "__main__":
    app()
