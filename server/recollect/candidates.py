"""
Candidate assembly: stored photo -> decrypted bytes -> face descriptors.

Each photo's pipeline is independent, so the folder is fanned out over a
thread pool and fanned back in before any matching starts (the adaptive
threshold needs the whole distribution). A photo that fails any stage is
dropped and reported; it never aborts the search.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from recollect import config
from recollect.envelope import (
    LEGACY_PHOTO_LAYERS,
    PHOTO_LAYERS,
    EnvelopeLayer,
    EnvelopeStack,
)
from recollect.errors import DescriptorShapeError, InvalidImageError
from recollect.face_utils import DetectedFace, FaceDetectorInterface, validate_image
from recollect.similarity import CandidateItem

logger = logging.getLogger(__name__)


@dataclass
class PhotoRecord:
    """A stored photo as read from the database."""
    photo_id: str
    name: str
    data: bytes
    is_encrypted: bool = True
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DecodedPhoto:
    record: PhotoRecord
    image_bytes: bytes
    mime_type: str
    faces: List[DetectedFace]


@dataclass
class AssemblyFailure:
    photo_id: str
    name: str
    stage: str  # unwrap | validate | detect | no_faces | descriptor
    reason: str


@dataclass
class AssemblyReport:
    candidates: List[CandidateItem] = field(default_factory=list)
    decoded: Dict[str, DecodedPhoto] = field(default_factory=dict)
    failures: List[AssemblyFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.candidates) + len(self.failures)


def layers_for(is_encrypted: bool) -> Tuple[EnvelopeLayer, ...]:
    """Layers applied to a stored photo, in application order."""
    return PHOTO_LAYERS if is_encrypted else LEGACY_PHOTO_LAYERS


def decode_photo(
    record: PhotoRecord,
    stack: EnvelopeStack,
    detector: FaceDetectorInterface
) -> Union[DecodedPhoto, AssemblyFailure]:
    """Run one photo through unwrap -> validate -> detect."""

    def fail(stage: str, reason: str) -> AssemblyFailure:
        logger.warning("Dropping photo %s (%s) at %s: %s", record.photo_id, record.name, stage, reason)
        return AssemblyFailure(photo_id=record.photo_id, name=record.name, stage=stage, reason=reason)

    if not record.data:
        return fail("unwrap", "no data stored")

    unwrapped = stack.unwrap(record.data, layers_for(record.is_encrypted))
    if not unwrapped.ok:
        return fail("unwrap", f"{unwrapped.failed_layer.value} layer could not be opened")

    try:
        mime_type = validate_image(unwrapped.data)
    except InvalidImageError as exc:
        return fail("validate", str(exc))

    try:
        faces = detector.detect_faces(unwrapped.data)
    except Exception as exc:  # the embedding model is external; any failure drops the photo
        return fail("detect", f"{type(exc).__name__}: {exc}")

    if not faces:
        return fail("no_faces", "no faces detected")

    return DecodedPhoto(record=record, image_bytes=unwrapped.data, mime_type=mime_type, faces=faces)


def assemble_candidates(
    records: Sequence[PhotoRecord],
    stack: EnvelopeStack,
    detector: FaceDetectorInterface,
    max_workers: int = config.ASSEMBLY_WORKERS
) -> AssemblyReport:
    """
    Decode and embed every photo concurrently.

    Returns:
        AssemblyReport with one CandidateItem per usable photo, in the
        order the records were given.
    """
    report = AssemblyReport()
    if not records:
        return report

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        outcomes = list(executor.map(lambda record: decode_photo(record, stack, detector), records))

    for outcome in outcomes:
        if isinstance(outcome, AssemblyFailure):
            report.failures.append(outcome)
            continue

        record = outcome.record
        try:
            candidate = CandidateItem.from_faces(
                record.photo_id,
                outcome.faces,
                metadata={**record.metadata, "name": record.name},
            )
        except DescriptorShapeError as exc:
            logger.warning("Dropping photo %s: unusable descriptor (%s)", record.photo_id, exc)
            report.failures.append(AssemblyFailure(
                photo_id=record.photo_id, name=record.name, stage="descriptor", reason=str(exc)
            ))
            continue

        report.candidates.append(candidate)
        report.decoded[record.photo_id] = outcome

    logger.info(
        "Assembled %d candidate(s) from %d photo(s); %d dropped",
        len(report.candidates), len(records), len(report.failures)
    )
    return report
