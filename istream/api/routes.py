from __future__ import annotations

import shutil
import uuid
from pathlib import Path as FilePath
from typing import Optional
from urllib.parse import urlencode

from fastapi import (
    APIRouter,
    Cookie,
    Depends,
    File,
    Form,
    Header,
    Path,
    Query,
    Request,
    Response,
    UploadFile,
)
from fastapi.responses import RedirectResponse

from istream.api.error_handling import service_error_response
from istream.api.schemas import (
    AuthResponse,
    ChannelProfileResponse,
    Envelope,
    LoginRequest,
    PageResponse,
    PasswordChangeRequest,
    ReactionResponse,
    RegisterResponse,
    ResendOtpRequest,
    SubscriptionResponse,
    TokenRefreshRequest,
    UpdateAccountRequest,
    UserResponse,
    VerifyOtpRequest,
    VideoResponse,
    ViewResponse,
)
from istream.logging import get_logger
from istream.service.errors import AuthenticationError, ServiceError, ValidationError
from istream.service.media import safe_join
from istream.service.runtime import get_runtime
from istream.service.tokens import AuthContext
from istream.storage.models import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
_ALLOWED_IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
_ALLOWED_VIDEO_SUFFIXES = {".mp4", ".webm", ".mov", ".mkv"}


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    token = _bearer_token(authorization) or access_cookie
    if not token:
        raise AuthenticationError("unauthorized request")
    return get_runtime().tokens.verify_access(token)


async def get_optional_user(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> Optional[AuthContext]:
    """Resolve the caller when a valid access token is present, otherwise treat as guest."""
    token = _bearer_token(authorization) or access_cookie
    if not token:
        return None
    try:
        return get_runtime().tokens.verify_access(token)
    except AuthenticationError:
        logger.info("optional_auth_ignored_invalid_token")
        return None


def _apply_session_cookies(response: Response, pair: TokenPair) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        ACCESS_COOKIE,
        pair.access_token,
        httponly=True,
        secure=True,
        samesite="none",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=True,
        samesite="none",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=True, httponly=True, samesite="none")


async def _stage_upload(
    upload: UploadFile, allowed: set = _ALLOWED_IMAGE_SUFFIXES
) -> str:
    """Copy an uploaded file into the staging area and return its local path."""
    suffix = FilePath(upload.filename or "").suffix.lower()
    if suffix not in allowed:
        raise ValidationError(
            "unsupported file type", detail={"filename": upload.filename or ""}
        )
    staging = FilePath(get_runtime().settings.shared_fs_root) / "tmp" / "uploads"
    staging.mkdir(parents=True, exist_ok=True)
    dest = safe_join(staging, f"{uuid.uuid4().hex}{suffix}")
    with dest.open("wb") as handle:
        shutil.copyfileobj(upload.file, handle)
    await upload.close()
    return str(dest)


def _discard_staged(path: Optional[str]) -> None:
    if path:
        FilePath(path).unlink(missing_ok=True)


# -- users -----------------------------------------------------------------


@router.post("/users/register", response_model=Envelope, status_code=201, tags=["users"])
async def register(
    full_name: str = Form(..., max_length=128),
    email: str = Form(..., max_length=254),
    username: str = Form(..., max_length=64),
    password: str = Form(..., max_length=128),
    avatar: UploadFile = File(...),
    cover_image: Optional[UploadFile] = File(None),
):
    """Create a password account and send the verification code.

    The avatar (and optional cover image) are stored first; if registration
    fails afterwards the stored objects are removed again.

    Raises:
        400: If a field is missing or the email is malformed
        409: If the username or email is taken
        502: If image storage or email delivery fails
    """
    runtime = get_runtime()
    stored = []
    staged = []
    try:
        avatar_path = await _stage_upload(avatar)
        staged.append(avatar_path)
        avatar_obj = await runtime.auth.store_media(avatar_path, "avatar")
        stored.append((avatar_obj.url, "avatar"))
        cover_url = ""
        if cover_image is not None and cover_image.filename:
            cover_path = await _stage_upload(cover_image)
            staged.append(cover_path)
            cover_obj = await runtime.auth.store_media(cover_path, "cover_image")
            stored.append((cover_obj.url, "cover_image"))
            cover_url = cover_obj.url
        user = await runtime.auth.register(
            full_name=full_name,
            email=email,
            username=username,
            password=password,
            avatar=avatar_obj.url,
            cover_image=cover_url,
        )
    except ServiceError:
        for url, kind in stored:
            await runtime.auth.discard_media(url, kind)
        raise
    finally:
        for path in staged:
            _discard_staged(path)
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=user.id,
            username=user.username,
            email=user.email,
            is_verified=user.is_verified,
        ),
    )


@router.post("/users/verify-otp", response_model=Envelope, tags=["users"])
async def verify_otp(body: VerifyOtpRequest):
    """Mark the account verified when the pending code matches and has not expired.

    Raises:
        400: If the code is wrong, expired or already used (``invalid_otp``)
    """
    runtime = get_runtime()
    await runtime.auth.verify_otp(body.user_id, body.otp)
    return Envelope(status="ok", data={"verified": True})


@router.post("/users/resend-otp", response_model=Envelope, tags=["users"])
async def resend_otp(body: ResendOtpRequest):
    """Replace the pending code and email it again.

    Raises:
        400: If the account is already verified
        404: If the user does not exist
        502: If email delivery fails
    """
    runtime = get_runtime()
    await runtime.auth.resend_otp(body.user_id)
    return Envelope(status="ok", data={"sent": True})


@router.post("/users/login", response_model=Envelope, tags=["users"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with username or email and password.

    Returns the token pair in the body and sets both session cookies.

    Raises:
        401: If the password does not match
        404: If no account matches the identifier
    """
    runtime = get_runtime()
    user, pair = await runtime.auth.login(body.identifier, body.password)
    _apply_session_cookies(response, pair)
    return Envelope(status="ok", data=AuthResponse.build(user, pair))


@router.post("/users/logout", response_model=Envelope, tags=["users"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "User logged out"})


@router.post("/users/refresh-token", response_model=Envelope, tags=["users"])
async def refresh_token(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token; each refresh token is accepted once.

    The token is read from the ``refreshToken`` cookie or the request body.
    Any rotation failure clears both session cookies.

    Raises:
        401: If the token is missing, invalid, expired or already used
    """
    runtime = get_runtime()
    token = refresh_cookie or (body.refresh_token if body else None)
    try:
        user, pair = await runtime.auth.refresh(token or "")
    except AuthenticationError as exc:
        logger.warning("refresh_rejected", reason=exc.message)
        failure = service_error_response(exc)
        _clear_session_cookies(failure)
        return failure
    _apply_session_cookies(response, pair)
    return Envelope(status="ok", data=AuthResponse.build(user, pair))


@router.post("/users/change-password", response_model=Envelope, tags=["users"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    """Replace the password after checking the current one.

    Raises:
        400: If the new password is blank or does not match the confirmation
        401: If the current password is wrong
    """
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id, body.old_password, body.new_password, body.confirm_password
    )
    return Envelope(status="ok", data={"message": "Password changed successfully"})


@router.get("/users/current-user", response_model=Envelope, tags=["users"])
async def current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_current_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/users/update-account", response_model=Envelope, tags=["users"])
async def update_account(
    body: UpdateAccountRequest, principal: AuthContext = Depends(get_user)
):
    """Update profile fields.

    Existing subscription edges keep the snapshot taken when they were created.

    Raises:
        400: If no field is supplied
        409: If the new username or email is taken
    """
    runtime = get_runtime()
    user = await runtime.auth.update_account(
        principal.user_id,
        full_name=body.full_name,
        email=body.email,
        username=body.username,
        description=body.description,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


async def _replace_profile_image(upload: UploadFile, principal: AuthContext, kind: str):
    runtime = get_runtime()
    staged = await _stage_upload(upload)
    try:
        if kind == "avatar":
            user = await runtime.auth.update_avatar(principal.user_id, staged)
        else:
            user = await runtime.auth.update_cover_image(principal.user_id, staged)
    finally:
        _discard_staged(staged)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/users/avatar", response_model=Envelope, tags=["users"])
async def update_avatar(
    avatar: UploadFile = File(...), principal: AuthContext = Depends(get_user)
):
    """Replace the avatar; the previous image is deleted best-effort.

    Raises:
        400: If the upload is not an image
        502: If image storage fails
    """
    return await _replace_profile_image(avatar, principal, "avatar")


@router.patch("/users/cover-image", response_model=Envelope, tags=["users"])
async def update_cover_image(
    cover_image: UploadFile = File(...), principal: AuthContext = Depends(get_user)
):
    return await _replace_profile_image(cover_image, principal, "cover_image")


@router.get("/users/c/{username}", response_model=Envelope, tags=["users"])
async def channel_profile(
    username: str = Path(..., max_length=64),
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    """Public channel page with subscriber counts.

    ``is_subscribed`` reflects the caller when signed in and is false for guests.

    Raises:
        404: If the channel does not exist
    """
    runtime = get_runtime()
    profile = runtime.subscriptions.channel_profile(
        username.strip().lower(), principal.user_id if principal else None
    )
    return Envelope(status="ok", data=ChannelProfileResponse.from_profile(profile))


@router.get("/users/history", response_model=Envelope, tags=["users"])
async def watch_history(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    videos = runtime.engagement.watch_history(principal.user_id)
    return Envelope(status="ok", data=[VideoResponse.from_video(v) for v in videos])


@router.delete("/users/history", response_model=Envelope, tags=["users"])
async def clear_watch_history(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.engagement.clear_watch_history(principal.user_id)
    return Envelope(status="ok", data={"message": "Watch history cleared"})


@router.delete("/users/history/{video_id}", response_model=Envelope, tags=["users"])
async def remove_from_watch_history(
    video_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    """Drop one video from the history; the next view of it counts again."""
    runtime = get_runtime()
    runtime.engagement.remove_from_watch_history(principal.user_id, video_id)
    return Envelope(status="ok", data={"video_id": video_id})


@router.get("/users/liked-videos", response_model=Envelope, tags=["users"])
async def liked_videos(
    page: int = Query(1),
    page_size: Optional[int] = Query(None),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = runtime.engagement.liked_videos(principal.user_id, page, page_size)
    return Envelope(
        status="ok",
        data=PageResponse.from_page(
            result, [VideoResponse.from_video(v) for v in result.items]
        ),
    )


# -- google sign-in --------------------------------------------------------


def _frontend_redirect(path: str, **params: str) -> RedirectResponse:
    origin = get_runtime().settings.cors_origin.rstrip("/")
    query = f"?{urlencode(params)}" if params else ""
    return RedirectResponse(f"{origin}{path}{query}", status_code=302)


@router.get("/users/auth/google", tags=["users"])
async def google_auth():
    """Redirect the browser to Google's consent screen.

    Raises:
        502: If Google sign-in is not configured
    """
    runtime = get_runtime()
    return RedirectResponse(runtime.oauth.authorization_url(), status_code=302)


@router.get("/users/auth/google/callback", tags=["users"])
async def google_auth_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
):
    """Finish Google sign-in and hand the session to the frontend via cookies.

    Every failure ends on the frontend's generic error page.
    """
    runtime = get_runtime()
    if request.query_params.get("error"):
        logger.warning("oauth_callback_denied", provider="google")
        return _frontend_redirect("/auth/error", message="Google sign-in was cancelled")
    try:
        profile = await runtime.oauth.exchange(code or "", state or "")
        user, pair = await runtime.auth.federated_login(profile)
    except ServiceError as exc:
        logger.warning(
            "oauth_callback_failed",
            provider="google",
            error_code=exc.error_code,
            status_code=exc.status_code,
        )
        return _frontend_redirect("/auth/error", message="Authentication failed")
    redirect = _frontend_redirect("/auth/callback", user_id=user.id)
    _apply_session_cookies(redirect, pair)
    return redirect


# -- subscriptions ---------------------------------------------------------


@router.get("/subscriptions/get-subscriptions", response_model=Envelope, tags=["subscriptions"])
async def get_subscriptions(
    page: int = Query(1),
    page_size: Optional[int] = Query(None),
    principal: AuthContext = Depends(get_user),
):
    """Channels the caller follows, newest subscription first.

    Raises:
        400: If page or page_size is below one
    """
    runtime = get_runtime()
    result = runtime.subscriptions.list_subscriptions(principal.user_id, page, page_size)
    return Envelope(
        status="ok",
        data=PageResponse.from_page(
            result, [SubscriptionResponse.from_edge(edge) for edge in result.items]
        ),
    )


@router.post(
    "/subscriptions/{channel_id}",
    response_model=Envelope,
    status_code=201,
    tags=["subscriptions"],
)
async def subscribe(
    channel_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    """Follow a channel.

    Raises:
        400: If the caller targets their own channel (``invalid_operation``)
        404: If the channel does not exist
        409: If already subscribed
    """
    runtime = get_runtime()
    edge = runtime.subscriptions.subscribe(principal.user_id, channel_id)
    return Envelope(status="ok", data=SubscriptionResponse.from_edge(edge))


@router.delete("/subscriptions/{channel_id}", response_model=Envelope, tags=["subscriptions"])
async def unsubscribe(
    channel_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    """Stop following a channel.

    Raises:
        404: If there is no subscription to remove
    """
    runtime = get_runtime()
    runtime.subscriptions.unsubscribe(principal.user_id, channel_id)
    return Envelope(status="ok", data={"channel_id": channel_id, "subscribed": False})


# -- video engagement ------------------------------------------------------


@router.post("/video", response_model=Envelope, status_code=201, tags=["video"])
async def publish_video(
    title: str = Form(..., max_length=200),
    description: str = Form(..., max_length=5000),
    video_file: UploadFile = File(...),
    thumbnail: UploadFile = File(...),
    principal: AuthContext = Depends(get_user),
):
    """Store an uploaded video and its thumbnail and register it for engagement.

    Raises:
        400: If a field is missing or a file has an unsupported type
        502: If object storage fails
    """
    runtime = get_runtime()
    staged = []
    try:
        video_path = await _stage_upload(video_file, _ALLOWED_VIDEO_SUFFIXES)
        staged.append(video_path)
        thumbnail_path = await _stage_upload(thumbnail)
        staged.append(thumbnail_path)
        video = await runtime.videos.publish(
            principal.user_id, title, description, video_path, thumbnail_path
        )
    finally:
        for path in staged:
            _discard_staged(path)
    return Envelope(status="ok", data=VideoResponse.from_video(video))


@router.get("/video/{video_id}", response_model=Envelope, tags=["video"])
async def get_video(video_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    video = runtime.videos.get_video(video_id)
    return Envelope(status="ok", data=VideoResponse.from_video(video))


@router.post("/video/{video_id}/view", response_model=Envelope, tags=["video"])
async def record_view(
    video_id: str = Path(..., max_length=64),
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    """Count a view.

    Signed-in viewers count once per video while it stays in their history;
    guest views always count.

    Raises:
        404: If the video does not exist
    """
    runtime = get_runtime()
    result = runtime.engagement.record_view(
        video_id, principal.user_id if principal else None
    )
    return Envelope(
        status="ok",
        data=ViewResponse(video_id=video_id, views=result.views, counted=result.counted),
    )


async def _react(video_id: str, principal: AuthContext, action: str) -> Envelope:
    runtime = get_runtime()
    state = runtime.engagement.toggle_reaction(principal.user_id, video_id, action)
    counts = runtime.engagement.reaction_counts(video_id)
    return Envelope(
        status="ok",
        data=ReactionResponse(
            video_id=video_id,
            reaction=state.value if state else None,
            likes=counts.likes,
            dislikes=counts.dislikes,
        ),
    )


@router.post("/video/{video_id}/like", response_model=Envelope, tags=["video"])
async def like_video(
    video_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    """Toggle a like; liking a disliked video switches the reaction.

    Raises:
        404: If the video does not exist
    """
    return await _react(video_id, principal, "like")


@router.post("/video/{video_id}/dislike", response_model=Envelope, tags=["video"])
async def dislike_video(
    video_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    return await _react(video_id, principal, "dislike")


@router.get("/video/{video_id}/reactions", response_model=Envelope, tags=["video"])
async def video_reactions(
    video_id: str = Path(..., max_length=64),
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    runtime = get_runtime()
    summary = runtime.engagement.reaction_summary(
        video_id, principal.user_id if principal else None
    )
    return Envelope(
        status="ok",
        data=ReactionResponse(
            video_id=video_id,
            reaction=summary.user_reaction.value if summary.user_reaction else None,
            likes=summary.likes,
            dislikes=summary.dislikes,
        ),
    )
