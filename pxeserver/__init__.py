"""
PXE Boot Server - Service Supervisor

Renders configuration for and supervises the DHCP, TFTP, and HTTP
daemons that make up a PXE boot server, with continuous health
monitoring and graceful shutdown.
"""

__version__ = "1.0.0"
__author__ = "Penguin Tech Inc"
