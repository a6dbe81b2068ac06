"""
Error taxonomy shared by the envelope codec, the matcher and the API layer.
"""


class RecollectError(Exception):
    """Base class for every error raised by the core."""


# ============================================================================
# Envelope Codec
# ============================================================================

class EncryptionError(RecollectError):
    """Primitive-level misuse (bad key/IV length, missing secret). Fatal."""


class MalformedEnvelopeError(RecollectError):
    """Envelope is structurally invalid, e.g. shorter than the header."""


class AuthenticationError(RecollectError):
    """
    Tag verification failed.

    Raised with the same message whether the secret was wrong or the data
    was corrupted.
    """


# ============================================================================
# Similarity Matcher
# ============================================================================

class DescriptorShapeError(RecollectError):
    """Two compared descriptors differ in length or are not 1-D vectors."""


class EmptyCandidateSetError(RecollectError):
    """Matching was requested against zero candidates."""


# ============================================================================
# Candidate assembly
# ============================================================================

class InvalidImageError(RecollectError):
    """Decoded bytes are not a readable image."""
