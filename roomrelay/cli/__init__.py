"""CLI module for roomrelay."""
