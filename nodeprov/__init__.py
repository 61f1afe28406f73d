"""nodeprov — provision a cluster node with an alternate container runtime stack."""

__version__ = "0.1.0"
