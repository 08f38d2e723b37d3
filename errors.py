class LlamaError(ValueError):
    """Base class for everything the inference core refuses to load or process."""


class InvalidCheckpoint(LlamaError):
    """Checkpoint header or tensor region is truncated or inconsistent."""


class InvalidVocabulary(LlamaError):
    """Vocabulary record is truncated or malformed."""


class InvalidInput(LlamaError):
    """Text or token ids handed to the core cannot be processed."""
