"""
Recollect Vault - FastAPI Backend
=================================

Encrypted photo folders with face search.

Endpoints:
- POST   /api/users                     - Register a user
- GET    /api/users/{id}                - Get a user
- POST   /api/folders                   - Create a folder
- GET    /api/folders/user/{user_id}    - Folders owned by a user
- GET    /api/folders/shared            - Folders shared with the caller
- GET    /api/folders/{id}              - Folder with its photos
- DELETE /api/folders/{id}              - Delete a folder
- POST   /api/folders/{id}/share        - Share a folder by email
- POST   /api/folders/{id}/upload       - Upload client-sealed photos
- POST   /api/folders/{id}/blogs        - Add an encrypted note
- GET    /api/folders/{id}/blogs        - List notes, newest first
- POST   /api/photos/find-similar       - Find photos with a similar face
- GET    /health                        - Health check

The caller identity arrives in the X-User-Id header; login and sessions
are handled in front of this service.
"""

import base64
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from recollect import __version__, config
from recollect.candidates import assemble_candidates, layers_for
from recollect.database import (
    Folder,
    User,
    add_photo,
    create_blog,
    create_folder,
    create_user,
    delete_folder,
    get_access,
    get_blogs_by_folder,
    get_db,
    get_folder,
    get_folder_by_name,
    get_folders_by_owner,
    get_shared_folders,
    get_user_by_email,
    get_user_by_id,
    init_db,
    open_server_layer,
    share_folder,
)
from recollect.envelope import EnvelopeStack
from recollect.errors import (
    AuthenticationError,
    DescriptorShapeError,
    EmptyCandidateSetError,
    EncryptionError,
    InvalidImageError,
    MalformedEnvelopeError,
    RecollectError,
)
from recollect.face_utils import (
    ENCODING_DIMENSIONS,
    FaceDetectorInterface,
    create_detector,
    image_to_data_url,
    validate_image,
)
from recollect.logging_config import configure_logging
from recollect.models import (
    BlogCreate,
    BlogInfo,
    DeleteResponse,
    ErrorCode,
    ErrorResponse,
    FindSimilarResponse,
    FolderCreate,
    FolderDetailResponse,
    FolderInfo,
    FolderListResponse,
    HealthResponse,
    PhotoPayload,
    SearchDebug,
    SharedFolderInfo,
    ShareRequest,
    ShareResponse,
    SimilarPhoto,
    UploadResponse,
    UserCreate,
    UserInfo,
)
from recollect.similarity import (
    MatcherConfig,
    ScoringPolicy,
    SelectionStrategy,
    SimilarityMatcher,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Dependencies
# ============================================================================

@lru_cache(maxsize=1)
def get_face_detector() -> FaceDetectorInterface:
    """The embedding model, loaded once per process."""
    return create_detector(config.DETECTOR_MODEL, config.MIN_DETECTION_CONFIDENCE)


def get_envelope_stack() -> EnvelopeStack:
    return EnvelopeStack(config.get_layer_secrets())


def get_matcher() -> SimilarityMatcher:
    return SimilarityMatcher(MatcherConfig())


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> User:
    if not x_user_id:
        raise HTTPException(
            status_code=401,
            detail={"error_code": ErrorCode.NOT_AUTHENTICATED, "message": "X-User-Id header is required."}
        )
    user = get_user_by_id(db, x_user_id)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"error_code": ErrorCode.NOT_AUTHENTICATED, "message": "Unknown user."}
        )
    return user


def _load_folder(db: Session, folder_id: str, user: User, write: bool = False, owner_only: bool = False) -> Folder:
    """Fetch a folder and enforce owner/share permissions."""
    folder = get_folder(db, folder_id)
    if folder is None:
        raise HTTPException(
            status_code=404,
            detail={"error_code": ErrorCode.FOLDER_NOT_FOUND, "message": "Folder not found."}
        )

    access = get_access(folder, user.id)
    if access is None or (owner_only and access != "owner"):
        raise HTTPException(
            status_code=403,
            detail={"error_code": ErrorCode.NOT_AUTHORIZED, "message": "Not authorized."}
        )
    if write and access == "view":
        raise HTTPException(
            status_code=403,
            detail={"error_code": ErrorCode.READ_ONLY, "message": "Read-only access."}
        )
    return folder


# ============================================================================
# Application Setup
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    configure_logging()
    logger.info("Recollect Vault starting up...")
    init_db()
    logger.info("Database initialized")
    try:
        detector = get_face_detector()
        logger.info("Face detector: %s", type(detector).__name__)
    except ImportError as exc:
        logger.warning("Face detector unavailable (%s); face search will fail until installed", exc)
    yield
    logger.info("Recollect Vault shutting down...")


app = FastAPI(
    title="Recollect Vault API",
    description="""
    ## Encrypted photo folders with face search

    Photos arrive already sealed by the client and are sealed again with
    the server key (AES-256-GCM, PBKDF2-SHA512 derived keys). Notes are
    sealed with the server key.

    ### Face search
    - `adaptive_top_k` (default): threshold = max(floor, mean - 2 std), top 9
    - `first_hit`: fixed threshold, first qualifying face per photo

    ### Scoring policies
    - `exponential` (default): exp(-euclidean distance)
    - `cosine`: cosine similarity
    """,
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_ERROR_MAP = [
    (MalformedEnvelopeError, 400, ErrorCode.MALFORMED_ENVELOPE),
    (AuthenticationError, 400, ErrorCode.DECRYPTION_FAILED),
    (InvalidImageError, 400, ErrorCode.INVALID_IMAGE),
    (DescriptorShapeError, 422, ErrorCode.DESCRIPTOR_SHAPE),
    (EmptyCandidateSetError, 404, ErrorCode.NO_VALID_PHOTOS),
    (EncryptionError, 500, ErrorCode.ENCRYPTION_ERROR),
]


@app.exception_handler(RecollectError)
async def recollect_error_handler(request: Request, exc: RecollectError):
    status_code, error_code = 500, ErrorCode.PROCESSING_ERROR
    for error_type, status, code in _ERROR_MAP:
        if isinstance(exc, error_type):
            status_code, error_code = status, code
            break

    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": {"error_code": error_code, "message": str(exc)}}
    )


# ============================================================================
# Health & Info Endpoints
# ============================================================================

@app.get("/", tags=["Info"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Recollect Vault API",
        "version": __version__,
        "encoding_dimensions": ENCODING_DIMENSIONS,
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health", response_model=HealthResponse, tags=["Info"])
async def health_check(db: Session = Depends(get_db)):
    """Check system health."""
    try:
        config.get_layer_secrets()
        encryption_configured = True
    except EncryptionError:
        encryption_configured = False

    return HealthResponse(
        status="healthy",
        version=__version__,
        database_connected=db.is_active,
        face_detector_loaded=get_face_detector.cache_info().currsize > 0,
        encryption_configured=encryption_configured
    )


# ============================================================================
# Users
# ============================================================================

@app.post(
    "/api/users",
    response_model=UserInfo,
    status_code=201,
    responses={400: {"model": ErrorResponse}},
    tags=["Users"]
)
async def register_user(body: UserCreate, db: Session = Depends(get_db)):
    if get_user_by_email(db, body.email):
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.USER_ALREADY_EXISTS, "message": "Email already registered."}
        )
    return create_user(db, body.name, body.email)


@app.get("/api/users/{user_id}", response_model=UserInfo, tags=["Users"])
async def get_user(user_id: str, db: Session = Depends(get_db)):
    user = get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail={"error_code": ErrorCode.USER_NOT_FOUND, "message": "User not found."})
    return user


# ============================================================================
# Folders
# ============================================================================

@app.post(
    "/api/folders",
    response_model=FolderInfo,
    status_code=201,
    responses={400: {"model": ErrorResponse}},
    tags=["Folders"]
)
async def create_folder_endpoint(
    body: FolderCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    if get_folder_by_name(db, user.id, body.name):
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.FOLDER_ALREADY_EXISTS, "message": "Folder already exists."}
        )
    return create_folder(db, user.id, body.name, body.section.value)


@app.get("/api/folders/user/{user_id}", response_model=FolderListResponse, tags=["Folders"])
async def list_user_folders(
    user_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Folders owned by a user (only the user may list them)."""
    if user.id != user_id:
        raise HTTPException(status_code=403, detail={"error_code": ErrorCode.NOT_AUTHORIZED, "message": "Not authorized."})
    folders = [FolderInfo.model_validate(folder) for folder in get_folders_by_owner(db, user_id)]
    return FolderListResponse(folders=folders)


@app.get("/api/folders/shared", response_model=List[SharedFolderInfo], tags=["Folders"])
async def list_shared_folders(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Folders other users have shared with the caller."""
    shared = []
    for folder in get_shared_folders(db, user.id):
        shared.append(SharedFolderInfo(
            id=folder.id,
            name=folder.name,
            section=folder.section,
            owner_id=folder.owner_id,
            created_at=folder.created_at,
            updated_at=folder.updated_at,
            owner_email=folder.owner.email,
            permission=get_access(folder, user.id),
        ))
    return shared


@app.get("/api/folders/{folder_id}", response_model=FolderDetailResponse, tags=["Folders"])
async def get_folder_detail(
    folder_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    stack: EnvelopeStack = Depends(get_envelope_stack)
):
    """
    Folder with its photos.

    The server layer is removed here; photo data stays client-sealed and is
    opened by the client.
    """
    folder = _load_folder(db, folder_id, user)

    photos = []
    unreadable = []
    for photo in folder.photos:
        result = await run_in_threadpool(open_server_layer, photo, stack)
        if not result.ok:
            logger.warning("Photo %s: server layer could not be opened", photo.id)
            unreadable.append(photo.id)
            continue
        photos.append(PhotoPayload(
            id=photo.id,
            name=photo.name,
            content_type=photo.content_type,
            uploaded_at=photo.uploaded_at,
            data=base64.b64encode(result.data).decode("utf-8"),
        ))

    return FolderDetailResponse(
        folder=FolderInfo.model_validate(folder),
        photos=photos,
        unreadable_photos=unreadable
    )


@app.delete("/api/folders/{folder_id}", response_model=DeleteResponse, tags=["Folders"])
async def delete_folder_endpoint(
    folder_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    _load_folder(db, folder_id, user, owner_only=True)
    delete_folder(db, folder_id)
    return DeleteResponse(status="success", message="Folder deleted successfully")


@app.post(
    "/api/folders/{folder_id}/share",
    response_model=ShareResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Folders"]
)
async def share_folder_endpoint(
    folder_id: str,
    body: ShareRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    folder = _load_folder(db, folder_id, user, owner_only=True)

    target = get_user_by_email(db, body.email)
    if target is None:
        raise HTTPException(status_code=404, detail={"error_code": ErrorCode.USER_NOT_FOUND, "message": "User not found."})
    if target.id == user.id:
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.INVALID_REQUEST, "message": "Cannot share a folder with its owner."}
        )

    share = share_folder(db, folder, target, body.permission.value)
    if share is None:
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.ALREADY_SHARED, "message": "Folder is already shared with this user."}
        )

    return ShareResponse(folder_id=folder.id, shared_with=target.email, permission=share.permission)


@app.post(
    "/api/folders/{folder_id}/upload",
    response_model=UploadResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Photos"]
)
async def upload_photos(
    folder_id: str,
    photos: List[UploadFile] = File(..., description="Client-sealed photos"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    stack: EnvelopeStack = Depends(get_envelope_stack)
):
    """
    Upload photos into a folder.

    Each file must already carry the client layer; it is sealed with the
    server key before it touches the database.
    """
    folder = _load_folder(db, folder_id, user, write=True)

    if not photos:
        raise HTTPException(status_code=400, detail={"error_code": ErrorCode.INVALID_REQUEST, "message": "No files uploaded."})
    if len(photos) > config.MAX_UPLOAD_FILES:
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.INVALID_REQUEST, "message": f"At most {config.MAX_UPLOAD_FILES} files per upload."}
        )

    payloads = []
    for upload in photos:
        if upload.content_type not in config.ALLOWED_CONTENT_TYPES:
            raise HTTPException(
                status_code=400,
                detail={"error_code": ErrorCode.FILE_TYPE_NOT_ALLOWED, "message": f"File type not allowed: {upload.content_type}"}
            )
        data = await upload.read()
        if len(data) > config.MAX_UPLOAD_BYTES:
            raise HTTPException(
                status_code=400,
                detail={"error_code": ErrorCode.FILE_TOO_LARGE, "message": f"{upload.filename} exceeds the upload limit."}
            )
        payloads.append((upload.filename or "photo", upload.content_type, data))

    for name, content_type, data in payloads:
        await run_in_threadpool(add_photo, db, folder, name, content_type, data, stack)
    db.commit()

    logger.info("Stored %d photo(s) in folder %s", len(payloads), folder.id)
    return UploadResponse(
        status="success",
        message="Files uploaded and encrypted successfully",
        uploaded=len(payloads)
    )


# ============================================================================
# Blogs
# ============================================================================

@app.post("/api/folders/{folder_id}/blogs", response_model=BlogInfo, status_code=201, tags=["Blogs"])
async def create_blog_endpoint(
    folder_id: str,
    body: BlogCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    stack: EnvelopeStack = Depends(get_envelope_stack)
):
    folder = _load_folder(db, folder_id, user, write=True)
    blog = await run_in_threadpool(create_blog, db, folder.id, body.title, body.content, stack)
    return BlogInfo(
        id=blog.id,
        folder_id=blog.folder_id,
        title=body.title,
        content=body.content,
        created_at=blog.created_at
    )


@app.get("/api/folders/{folder_id}/blogs", response_model=List[BlogInfo], tags=["Blogs"])
async def list_blogs(
    folder_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    stack: EnvelopeStack = Depends(get_envelope_stack)
):
    folder = _load_folder(db, folder_id, user)

    blogs = []
    for blog in get_blogs_by_folder(db, folder.id):
        title, content = await run_in_threadpool(blog.open, stack)
        blogs.append(BlogInfo(
            id=blog.id,
            folder_id=blog.folder_id,
            title=title,
            content=content,
            created_at=blog.created_at
        ))
    return blogs


# ============================================================================
# Face Search
# ============================================================================

@app.post(
    "/api/photos/find-similar",
    response_model=FindSimilarResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Face Search"]
)
async def find_similar_faces(
    file: UploadFile = File(..., description="Client-sealed query photo"),
    folder_id: str = Form(...),
    is_encrypted: bool = Form(False, description="Query also carries the server layer"),
    strategy: Optional[SelectionStrategy] = Form(None),
    policy: Optional[ScoringPolicy] = Form(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    stack: EnvelopeStack = Depends(get_envelope_stack),
    detector: FaceDetectorInterface = Depends(get_face_detector),
    matcher: SimilarityMatcher = Depends(get_matcher)
):
    """
    Find photos in a folder whose faces resemble the face in the query photo.

    **Process:**
    1. Open the query photo's layers and detect its faces (one is used)
    2. Open and embed every photo in the folder concurrently
    3. Score, threshold and rank

    Photos that fail to decrypt or contain no face are skipped.
    """
    folder = _load_folder(db, folder_id, user)
    raw = await file.read()

    # 1. Query descriptor
    unwrapped = await run_in_threadpool(stack.unwrap, raw, layers_for(is_encrypted))
    if not unwrapped.ok:
        raise HTTPException(
            status_code=400,
            detail={
                "error_code": ErrorCode.DECRYPTION_FAILED,
                "message": f"Query image: {unwrapped.failed_layer.value}-side decryption failed."
            }
        )
    try:
        validate_image(unwrapped.data)
        query_faces = await run_in_threadpool(detector.detect_faces, unwrapped.data)
    except InvalidImageError as exc:
        raise HTTPException(status_code=400, detail={"error_code": ErrorCode.INVALID_IMAGE, "message": str(exc)})
    except Exception as exc:
        logger.warning("Face detection failed on query image: %s", exc)
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.PROCESSING_ERROR, "message": "Error processing input image."}
        )

    if not query_faces:
        raise HTTPException(
            status_code=400,
            detail={"error_code": ErrorCode.NO_FACE_DETECTED, "message": "No faces detected in the input image."}
        )

    # 2. Candidates
    records = [photo.to_record() for photo in folder.photos]
    if not records:
        raise HTTPException(
            status_code=404,
            detail={"error_code": ErrorCode.NO_PHOTOS, "message": "No photos found in the folder."}
        )

    report = await run_in_threadpool(assemble_candidates, records, stack, detector)
    if not report.candidates:
        raise HTTPException(
            status_code=404,
            detail={
                "error_code": ErrorCode.NO_VALID_PHOTOS,
                "message": "No valid photos found for similarity matching.",
                "details": {"total_photos": len(records), "failed_processing": len(report.failures)}
            }
        )

    # 3. Match
    if policy is not None:
        overrides = matcher.config.model_copy(update={"policy": policy, "threshold": None})
        matcher = SimilarityMatcher(overrides)
    result = matcher.match(query_faces, report.candidates, strategy=strategy)

    similar = []
    for match in result.matches:
        decoded = report.decoded[match.item_id]
        similar.append(SimilarPhoto(
            photo_id=match.item_id,
            name=decoded.record.name,
            content_type=decoded.record.content_type or decoded.mime_type,
            uploaded_at=match.metadata.get("uploaded_at"),
            similarity=match.similarity_percent,
            score=match.score,
            confidence=match.confidence,
            data=image_to_data_url(decoded.image_bytes, decoded.mime_type),
        ))

    return FindSimilarResponse(
        similar_photos=similar,
        debug=SearchDebug(
            total_photos=len(records),
            processed_photos=len(report.candidates),
            matches_found=len(similar),
            threshold=result.threshold,
            strategy=result.strategy.value,
            policy=result.policy.value,
        )
    )


# ============================================================================
# Run Server
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("recollect.main:app", host="0.0.0.0", port=8000, reload=True)
