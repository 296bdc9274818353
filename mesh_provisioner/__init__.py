"""Host-side provisioner for a serial Zephyr Bluetooth mesh shell gateway."""

__version__ = "0.1.0"
