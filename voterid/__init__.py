"""VoterID: voter registration, verification and single-use voting credentials."""

__version__ = "0.1.0"
