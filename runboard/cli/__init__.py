"""CLI module for runboard."""
