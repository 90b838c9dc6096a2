"""CLI module for rlmkit."""
