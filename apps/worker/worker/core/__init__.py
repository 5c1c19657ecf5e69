"""Ambient concerns shared by every worker module: settings, logging, errors."""
