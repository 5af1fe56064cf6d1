"""
Entry point for running the agent as a module.

Usage:
    python -m pagepilot --url https://example.com --goal "find the pricing page"
    python -m pagepilot --url https://example.com --goal "..." --log-level DEBUG
"""

from .main import main

if __name__ == "__main__":
    main()
