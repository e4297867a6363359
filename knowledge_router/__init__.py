"""
Knowledge Router Slack Bot

A Slack bot that routes messages and slash commands either to GitHub
commands or to a knowledge-base workspace, keeping per-thread context.
"""

__version__ = "1.0.0"
