"""Fleeting Proxmox.

Session lifecycle and VM resolution for a Proxmox VE instance group managed by an autoscaler.
"""

__version__ = "0.1.0"
__author__ = "Platform Engineering Team"
__license__ = "Apache-2.0"
