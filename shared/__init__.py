"""Shared helpers for the devops tools: logging setup and console output."""
