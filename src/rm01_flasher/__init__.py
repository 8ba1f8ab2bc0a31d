"""
RM-01 Flasher - provisioning tool for the RM-01 device

Flashes robOS onto the companion ESP32-S3, puts the Jetson host module into
recovery mode and flashes it, and prepares the CFE and TF cards.
"""

__version__ = "1.0.0"

__all__ = [
    "__version__",
]
