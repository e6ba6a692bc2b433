"""ccmax - plan rolling 5-hour usage windows from your activity history."""

__version__ = "0.3.0"
