"""Manage Ceph OSDs, pools, snap services and RBD mirroring status on a cluster node."""

__version__ = "0.1.0"