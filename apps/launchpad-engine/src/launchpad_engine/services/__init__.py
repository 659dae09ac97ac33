"""Build pipeline services for LaunchPad Engine."""
