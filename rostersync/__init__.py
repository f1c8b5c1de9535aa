"""RosterSync - offline-first sync core for the team dashboard."""

__version__ = "0.4.0"
