"""boothsync command-line interface."""
