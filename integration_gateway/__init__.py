"""Hospital integration gateway: partner EHR connectivity for the administration platform."""

__version__ = "0.1.0"
