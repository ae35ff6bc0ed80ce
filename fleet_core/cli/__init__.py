"""
CLI MODULE
==========

Command-line interface for the fleet supervisor.

Usage:
    fleet serve --factory <module:callable>
    fleet agents
    fleet plan <name>
"""

from .main import main, cli_agents, cli_window, cli_plan, cli_history

__all__ = [
    'main',
    'cli_agents',
    'cli_window',
    'cli_plan',
    'cli_history',
]
