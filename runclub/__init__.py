"""
Run club credential store: Strava OAuth credentials for chat members,
kept encrypted at rest and refreshed before they expire.
"""

__version__ = "0.1.0"
