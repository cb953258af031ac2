"""LaunchDeck: deploy one containerized service to AWS, Azure or GCP."""

__version__ = "0.1.0"
