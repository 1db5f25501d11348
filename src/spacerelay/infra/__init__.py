"""Remote-machine provisioning interface."""
