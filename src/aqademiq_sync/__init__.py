"""Two-way sync between the Aqademiq academic planner and Google Calendar."""

__version__ = "1.0.0"
