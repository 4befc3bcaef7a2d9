"""Custom exception classes for the harvester."""


class HarvesterException(Exception):
    """Base exception for all harvester errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(HarvesterException):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} with identifier '{identifier}' not found")


class ScraperError(HarvesterException):
    """Raised when a scraper hits a contract violation it cannot report as a result."""

    def __init__(self, adapter_id: str, message: str):
        super().__init__(f"Scraper error for {adapter_id}: {message}")


class AdapterRegistrationError(HarvesterException):
    """Raised when an adapter cannot be registered (duplicate id, bad metadata)."""

    def __init__(self, adapter_id: str, message: str):
        super().__init__(f"Cannot register adapter '{adapter_id}': {message}")


class InvalidUrlError(HarvesterException):
    """Raised when a URL cannot be parsed or canonicalized."""

    def __init__(self, url: str):
        super().__init__(f"Invalid URL: {url[:200]}")


class InvalidIdentityKeyError(HarvesterException):
    """Raised when an identity key does not follow the {idType}:{idValue} format."""

    def __init__(self, message: str):
        super().__init__(f"Invalid identity key: {message}")
