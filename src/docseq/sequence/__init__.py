from docseq.sequence.adapter import (
    Sequenced,
    attach_sequence,
    counter_reset,
    registry_of,
    set_next,
)
from docseq.sequence.engine import SeedResult, Sequence
from docseq.sequence.errors import ConfigurationError, SequenceError, UnknownSequenceError
from docseq.sequence.options import SequenceOptions
from docseq.sequence.registry import SequenceRegistry
