"""Shared fixtures: secrets, a fake embedding model, and an isolated database."""

import io
from typing import Dict, List, Tuple

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from recollect.database import get_db, init_db
from recollect.envelope import EnvelopeStack
from recollect.face_utils import DetectedFace, FaceDetectorInterface
from recollect.main import app, get_face_detector

SERVER_SECRET = "server-master-secret"
CLIENT_SECRET = "client-master-secret"

RED = (255, 0, 0)
NEAR_RED = (250, 0, 0)
GREEN = (0, 255, 0)
BLUE = (0, 0, 255)
WHITE = (255, 255, 255)
BLACK = (0, 0, 0)


def make_png(color: Tuple[int, int, int], size: Tuple[int, int] = (8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def face(vector, confidence: float = 1.0) -> DetectedFace:
    return DetectedFace(
        x=0, y=0, width=4, height=4,
        encoding=np.asarray(vector, dtype=np.float64),
        confidence=confidence
    )


class FakeDetector(FaceDetectorInterface):
    """
    Stand-in for the embedding model.

    The colour of the top-left pixel picks the faces to return. Colours
    mapped to None make detection raise.
    """

    def __init__(self, faces_by_color: Dict[Tuple[int, int, int], List[DetectedFace]]):
        self.faces_by_color = faces_by_color
        self.calls = 0

    def detect_faces(self, image_bytes: bytes) -> List[DetectedFace]:
        self.calls += 1
        with Image.open(io.BytesIO(image_bytes)) as img:
            pixel = img.convert("RGB").getpixel((0, 0))
        faces = self.faces_by_color.get(tuple(pixel), [])
        if faces is None:
            raise RuntimeError("model crashed")
        return list(faces)


@pytest.fixture(autouse=True)
def _secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENCRYPTION_MASTER_KEY", SERVER_SECRET)
    monkeypatch.setenv("CLIENT_ENCRYPTION_KEY", CLIENT_SECRET)


@pytest.fixture
def stack() -> EnvelopeStack:
    return EnvelopeStack({"server": SERVER_SECRET, "client": CLIENT_SECRET})


@pytest.fixture
def detector() -> FakeDetector:
    return FakeDetector({
        RED: [face([1.0, 0.0, 0.0])],
        NEAR_RED: [face([1.0, 0.01, 0.0])],
        GREEN: [face([1.0, 0.05, 0.0])],
        BLUE: [face([0.0, 1.0, 0.0])],
        WHITE: [],
        BLACK: None,
    })


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'vault.db'}",
        connect_args={"check_same_thread": False}
    )
    init_db(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory, detector):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_face_detector] = lambda: detector
    yield TestClient(app)
    app.dependency_overrides.clear()
