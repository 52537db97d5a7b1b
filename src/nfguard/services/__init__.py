"""Firewall reconciliation services: rule building, chain tracking,
verification, the drift watchdog and the controller lifecycle."""
