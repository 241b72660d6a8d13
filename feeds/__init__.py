"""Drop-in feed definitions. Each module exports ``FEED`` (or ``FEEDS``)."""
