"""LaunchDeck deployment engine.

This package holds the pieces every provider deployer is assembled from:
derived resource naming, the external process runner, the image
build/publish pipeline, the log tailer and the best-effort teardown
runner. Provider deployers live in :mod:`launchdeck.deploy.deployers`.
"""
