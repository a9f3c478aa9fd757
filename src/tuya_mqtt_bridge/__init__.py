"""Bridge between Tuya LAN devices and an MQTT broker."""

__version__ = "1.0.0"
