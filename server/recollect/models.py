"""
Pydantic Models for API Request/Response Validation

These define the contract between the web client and the vault backend.
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SectionEnum(str, Enum):
    MEMORY = "memory"
    DOCUMENTS = "documents"
    OTHER = "other"


class PermissionEnum(str, Enum):
    VIEW = "view"
    EDIT = "edit"


# ============================================================================
# Users
# ============================================================================

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")


class UserInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    created_at: datetime


# ============================================================================
# Folders
# ============================================================================

class FolderCreate(BaseModel):
    name: str = Field(..., min_length=1)
    section: SectionEnum


class FolderInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    section: SectionEnum
    owner_id: str
    created_at: datetime
    updated_at: Optional[datetime] = None


class SharedFolderInfo(FolderInfo):
    owner_email: str
    permission: PermissionEnum


class FolderListResponse(BaseModel):
    folders: List[FolderInfo]


class PhotoPayload(BaseModel):
    """A photo with the server layer removed; data is base64 and still client-sealed."""
    id: str
    name: str
    content_type: str
    uploaded_at: datetime
    data: str


class FolderDetailResponse(BaseModel):
    folder: FolderInfo
    photos: List[PhotoPayload]
    unreadable_photos: List[str] = Field(
        default_factory=list,
        description="IDs of photos whose server layer could not be opened"
    )


class ShareRequest(BaseModel):
    email: str
    permission: PermissionEnum = PermissionEnum.VIEW


class ShareResponse(BaseModel):
    folder_id: str
    shared_with: str
    permission: PermissionEnum


class UploadResponse(BaseModel):
    status: str = Field(..., examples=["success"])
    message: str
    uploaded: int


class DeleteResponse(BaseModel):
    status: str
    message: str


# ============================================================================
# Blogs
# ============================================================================

class BlogCreate(BaseModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class BlogInfo(BaseModel):
    id: str
    folder_id: str
    title: str
    content: str
    created_at: datetime


# ============================================================================
# Face search
# ============================================================================

class SimilarPhoto(BaseModel):
    photo_id: str
    name: str
    content_type: str
    uploaded_at: Optional[datetime] = None
    similarity: float = Field(..., description="Score on a 0-100 scale")
    score: float = Field(..., description="Raw score under the active policy")
    confidence: Optional[float] = Field(None, description="Detection confidence of the matched face")
    data: str = Field(..., description="Base64 data URL of the decrypted image")


class SearchDebug(BaseModel):
    total_photos: int
    processed_photos: int
    matches_found: int
    threshold: float
    strategy: str
    policy: str


class FindSimilarResponse(BaseModel):
    similar_photos: List[SimilarPhoto]
    debug: SearchDebug


# ============================================================================
# Health Check
# ============================================================================

class HealthResponse(BaseModel):
    status: str = Field(..., examples=["healthy"])
    version: str
    database_connected: bool
    face_detector_loaded: bool
    encryption_configured: bool


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    status: Literal["error"] = "error"
    error_code: str
    message: str
    details: Optional[dict] = None


# Error codes
class ErrorCode:
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    INVALID_IMAGE = "INVALID_IMAGE"
    INVALID_REQUEST = "INVALID_REQUEST"
    FILE_TYPE_NOT_ALLOWED = "FILE_TYPE_NOT_ALLOWED"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_ALREADY_EXISTS = "USER_ALREADY_EXISTS"
    FOLDER_NOT_FOUND = "FOLDER_NOT_FOUND"
    FOLDER_ALREADY_EXISTS = "FOLDER_ALREADY_EXISTS"
    ALREADY_SHARED = "ALREADY_SHARED"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    READ_ONLY = "READ_ONLY"
    NO_PHOTOS = "NO_PHOTOS"
    NO_VALID_PHOTOS = "NO_VALID_PHOTOS"
    MALFORMED_ENVELOPE = "MALFORMED_ENVELOPE"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    DESCRIPTOR_SHAPE = "DESCRIPTOR_SHAPE"
    ENCRYPTION_ERROR = "ENCRYPTION_ERROR"
    PROCESSING_ERROR = "PROCESSING_ERROR"
