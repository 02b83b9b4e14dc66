"""Core modules for Reelix."""
