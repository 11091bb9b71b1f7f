"""
kubeforward: interactive port forwarding for Kubernetes services.

Discover the ports exposed by the services of a namespace and toggle
local tunnels to them from a terminal UI.
"""

__version__ = "0.3.0"
