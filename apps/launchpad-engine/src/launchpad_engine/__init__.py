"""LaunchPad Engine - iOS build and App Store Connect submission runner."""

__version__ = "1.0.0"
