# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Exception hierarchy for the evaluation engine."""


class ReliaPromptError(Exception):
    """Base class for all reliaprompt errors."""


class ParseError(ReliaPromptError, ValueError):
    """Model output could not be coerced to the expected structural type."""

    def __init__(self, message: str = "Invalid input") -> None:
        super().__init__(message)


class ModelCallError(ReliaPromptError):
    """A model runner call failed (network, auth, provider error)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__("[{}] {}".format(provider, message))
        self.provider = provider


class ConfigurationError(ReliaPromptError):
    """Setup is incomplete: no models, no test cases, bad config."""


class NotFoundError(ConfigurationError):
    """A referenced resource (prompt, job) does not exist."""

    def __init__(self, resource: str, identifier=None) -> None:
        if identifier is not None:
            message = "{} {} not found".format(resource, identifier)
        else:
            message = "{} not found".format(resource)
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class InvariantError(ReliaPromptError):
    """Programming error. Never caught and retried."""


def get_error_message(error: BaseException) -> str:
    """Return a printable message for any exception."""
    message = str(error)
    return message if message else type(error).__name__
