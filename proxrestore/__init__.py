"""Restore orchestrator for Proxmox VE and Proxmox Backup Server configuration backups."""

__version__ = "1.0.0"
