"""
Face Embedding Utilities (dlib Version)

The embedding model is an external collaborator: it turns decoded image
bytes into zero or more 128-dim descriptors. The rest of the package only
sees the FaceDetectorInterface, so the model is loaded once by the API
process and injected where it is needed.
"""

import base64
import io
import logging
from typing import List

import numpy as np
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field

from recollect.errors import InvalidImageError

logger = logging.getLogger(__name__)

ENCODING_DIMENSIONS = 128


class DetectedFace(BaseModel):
    """
    Detected face with its descriptor.

    Using Pydantic for validation and for handing faces to the API models.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    x: int = Field(0, description="Top-left X coordinate", ge=0)
    y: int = Field(0, description="Top-left Y coordinate", ge=0)
    width: int = Field(0, description="Bounding box width", ge=0)
    height: int = Field(0, description="Bounding box height", ge=0)
    encoding: np.ndarray = Field(..., description="Face descriptor vector")
    confidence: float = Field(default=1.0, description="Detection confidence", ge=0.0, le=1.0)

    def to_dict(self) -> dict:
        """Convert to dictionary (excluding encoding for JSON safety)."""
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "confidence": self.confidence
        }


class FaceDetectorInterface:
    """Interface that embedding-model implementations must follow."""

    def detect_faces(self, image_bytes: bytes) -> List[DetectedFace]:
        raise NotImplementedError


class DlibFaceDetector(FaceDetectorInterface):
    """
    Face detector using dlib via the face_recognition library.

    Produces 128-dimensional descriptors. dlib reports no detection score,
    so every face gets confidence 1.0 and min_confidence only matters for
    detectors that do.

    Args:
        model: "hog" (faster, CPU) or "cnn" (more accurate, needs GPU)
        min_confidence: faces scoring below this are discarded
    """

    def __init__(self, model: str = "hog", min_confidence: float = 0.0):
        import face_recognition

        self._fr = face_recognition
        self.model = model
        self.min_confidence = min_confidence

    def detect_faces(self, image_bytes: bytes) -> List[DetectedFace]:
        """Detect all faces and generate 128-dim encodings."""
        image = self._fr.load_image_file(io.BytesIO(image_bytes))

        # (top, right, bottom, left) tuples
        face_locations = self._fr.face_locations(image, model=self.model)
        face_encodings = self._fr.face_encodings(image, face_locations)

        detected_faces = []
        for (top, right, bottom, left), encoding in zip(face_locations, face_encodings):
            face = DetectedFace(
                x=max(0, left),
                y=max(0, top),
                width=max(0, right - left),
                height=max(0, bottom - top),
                encoding=np.asarray(encoding, dtype=np.float64),
                confidence=1.0
            )
            if face.confidence >= self.min_confidence:
                detected_faces.append(face)

        return detected_faces


# ============================================================================
# Image validation
# ============================================================================

_MIME_BY_FORMAT = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "WEBP": "image/webp",
    "TIFF": "image/tiff",
}


def validate_image(image_bytes: bytes) -> str:
    """
    Confirm that decoded bytes are an image and return its MIME type.

    Falls back to a JPEG magic-number check for files Pillow cannot
    identify but that start with the SOI marker.

    Raises:
        InvalidImageError: bytes are not a recognisable image
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.verify()
            image_format = img.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        if image_bytes[:2] == b"\xff\xd8":
            return "image/jpeg"
        raise InvalidImageError(f"Unable to detect image type: {exc}") from exc

    mime = _MIME_BY_FORMAT.get(image_format or "")
    if mime is None:
        raise InvalidImageError(f"Unsupported image format: {image_format}")
    return mime


def create_detector(model: str = "hog", min_confidence: float = 0.0) -> FaceDetectorInterface:
    """Load the dlib-backed detector (done once per process)."""
    detector = DlibFaceDetector(model=model, min_confidence=min_confidence)
    logger.info("Face detector loaded: %s (%s)", type(detector).__name__, model)
    return detector


def image_to_data_url(image_bytes: bytes, mime_type: str = "image/jpeg") -> str:
    """Convert image bytes to a base64 data URL."""
    b64 = base64.b64encode(image_bytes).decode("utf-8")
    return f"data:{mime_type};base64,{b64}"
