from perfetto_assistant.envelope.model import DataEnvelope, EnvelopeError, parse_envelope
from perfetto_assistant.envelope.render import render

__all__ = ["DataEnvelope", "EnvelopeError", "parse_envelope", "render"]
