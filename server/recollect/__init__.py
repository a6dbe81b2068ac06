"""
Recollect Vault - Encrypted Photo Folders with Face Search
==========================================================

Stores photos and text notes in shared folders and finds photos whose
faces resemble a query photo. Everything binary is kept at rest inside
an AES-256-GCM envelope.

Components:
- envelope.py: salt/IV/tag/ciphertext envelope codec and layer stack
- similarity.py: descriptor scoring and adaptive-threshold matching
- face_utils.py: embedding-model interface (dlib 128-dim encodings)
- candidates.py: decode -> embed fan-out over a folder's photos
- database.py: SQLAlchemy storage for users, folders, photos, blogs
- models.py: Pydantic request/response models
- main.py: FastAPI application
"""

__version__ = "1.0.0"
