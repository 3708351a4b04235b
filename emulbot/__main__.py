"""
Entry point for running emulbot as a module: python -m emulbot
"""

from emulbot.cli.commands import app

if __name__ == "__main__":
    app()
