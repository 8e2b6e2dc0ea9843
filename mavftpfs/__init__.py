"""Mount the onboard storage of a flight controller as a local file system."""
