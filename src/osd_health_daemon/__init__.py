"""Rook Ceph OSD health monitor."""
