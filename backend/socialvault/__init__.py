"""SocialVault backup job orchestration."""

__version__ = "0.1.0"
