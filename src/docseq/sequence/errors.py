class SequenceError(Exception):
    pass


class ConfigurationError(SequenceError, ValueError):
    """A sequence cannot be attached with the given options."""


class UnknownSequenceError(SequenceError, LookupError):
    def __init__(self, sequence_id: str):
        super().__init__(f"Trying to use an unknown sequence with the id {sequence_id!r}")
        self.sequence_id = sequence_id
