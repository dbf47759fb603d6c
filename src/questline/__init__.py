"""Questline: event reconciliation and session scheduling for a tabletop RPG community."""

__version__ = "0.1.0"
