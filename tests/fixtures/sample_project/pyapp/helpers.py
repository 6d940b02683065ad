"""Helper functions for the service layer."""

MAX_RETRIES = 3


def slugify(text):
    """Turn text into a URL slug."""
    return "-".join(text.lower().split())


def _private_helper():
    return None


class Registry:
    """Keeps named items."""

    def __init__(self):
        self.items = {}

    def register(self, name, item):
        self.items[name] = item
        return item
