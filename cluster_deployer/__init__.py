"""Bootstrap and reconcile kubeadm clusters on bare machines."""

__version__ = "0.1.0"
