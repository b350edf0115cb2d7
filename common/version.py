"""Version information for fleetdeck."""

import os

__version__ = "0.1.0"

# Name reported by the HTTP surface and in webhook payloads
SERVICE_NAME = os.environ.get("FLEETDECK_SERVICE_NAME", "fleetdeck")
