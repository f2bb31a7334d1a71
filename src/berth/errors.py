"""Exception hierarchy for berth."""


class BerthError(Exception):
    """Base class for all berth errors."""


class TemplateError(BerthError):
    """A placeholder could not be resolved in strict mode."""


class ManifestError(BerthError):
    """A manifest is missing or malformed."""


class ParseError(ManifestError):
    """A manifest could not be parsed into its normalized form."""


class MappingError(BerthError):
    """A normalized service could not be lowered into a container config."""


class ContainerRuntimeError(BerthError):
    """A container runtime operation failed."""


class VerificationError(ContainerRuntimeError):
    """A runtime operation was accepted but the expected state was not reached."""


class ConfigConflictError(BerthError):
    """Two owned containers would share the same name."""
