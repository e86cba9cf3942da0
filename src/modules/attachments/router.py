"""API for tenant attachments: upload, listing, tokens, delivery and download."""

from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from fastapi.responses import Response

from src.core.exceptions import AuthorizationError, ValidationError
from src.modules.attachments.dependencies import get_attachment_service
from src.modules.attachments.schemas import (
    AttachmentListResponse,
    AttachmentResponse,
    DeliveryItem,
    IncomingFile,
    MigrationResponse,
    MoveToPermanentRequest,
    QuotaResponse,
    RemovedResponse,
    TokenResponse,
)
from src.modules.attachments.service import AttachmentService
from src.shared.schemas.base import ApiResponse

router = APIRouter(tags=["Attachments"])


@router.post(
    "/tenants/{tenant_id}/attachments",
    response_model=ApiResponse[list[AttachmentResponse]],
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachments(
    tenant_id: str,
    files: list[UploadFile] = File(...),
    service: AttachmentService = Depends(get_attachment_service),
):
    """Upload one or more files (PDF, DOC, DOCX, XLS, XLSX). All or none are stored."""
    incoming = [
        IncomingFile(
            name=upload.filename or "",
            mime_type=upload.content_type or "application/octet-stream",
            data=await upload.read(),
        )
        for upload in files
    ]
    if len(incoming) == 1:
        stored = [await service.upload(tenant_id, incoming[0])]
    else:
        stored = await service.upload_many(tenant_id, incoming)
    return ApiResponse(
        success=True,
        message=f"{len(stored)} file(s) uploaded",
        data=[AttachmentResponse.model_validate(a) for a in stored],
    )


@router.get("/tenants/{tenant_id}/attachments", response_model=ApiResponse[AttachmentListResponse])
async def list_attachments(
    tenant_id: str,
    service: AttachmentService = Depends(get_attachment_service),
):
    items = await service.list_for_tenant(tenant_id)
    summary = await service.summary(tenant_id)
    return ApiResponse(success=True, data=AttachmentListResponse(items=items, summary=summary))


@router.delete("/tenants/{tenant_id}/attachments", response_model=ApiResponse[RemovedResponse])
async def remove_tenant_attachments(
    tenant_id: str,
    service: AttachmentService = Depends(get_attachment_service),
):
    removed = await service.remove_all_for_tenant(tenant_id)
    return ApiResponse(success=True, message="Attachments removed", data=RemovedResponse(removed=removed))


@router.get("/tenants/{tenant_id}/attachments/quota", response_model=ApiResponse[QuotaResponse])
async def get_quota(
    tenant_id: str,
    service: AttachmentService = Depends(get_attachment_service),
):
    """Current pending usage against the tenant limits (always fresh)."""
    snapshot = await service.compute_quota(tenant_id)
    return ApiResponse(
        success=True,
        data=QuotaResponse(
            tenant_id=tenant_id,
            used_bytes=snapshot.used_bytes,
            used_mb=snapshot.used_mb,
            usage_percent=snapshot.usage_percent,
            remaining_bytes=snapshot.remaining_bytes,
            file_count=snapshot.file_count,
            max_file_size=snapshot.limits.max_file_size,
            max_tenant_size=snapshot.limits.max_tenant_size,
            max_files=snapshot.limits.max_files,
            can_add=snapshot.can_add,
        ),
    )


@router.post("/tenants/{tenant_id}/attachments/delivery", response_model=ApiResponse[list[DeliveryItem]])
async def prepare_delivery(
    tenant_id: str,
    service: AttachmentService = Depends(get_attachment_service),
):
    """Issue fresh tokens and URLs for every pending attachment of the tenant."""
    items = await service.prepare_for_delivery(tenant_id)
    return ApiResponse(success=True, data=items)


@router.delete("/attachments/{attachment_id}", response_model=ApiResponse[RemovedResponse])
async def remove_attachment(
    attachment_id: str,
    service: AttachmentService = Depends(get_attachment_service),
):
    removed = await service.remove(attachment_id)
    return ApiResponse(
        success=True,
        message="Attachment removed" if removed else "Attachment was already removed",
        data=RemovedResponse(removed=int(removed)),
    )


@router.post("/attachments/{attachment_id}/token", response_model=ApiResponse[TokenResponse])
async def renew_token(
    attachment_id: str,
    service: AttachmentService = Depends(get_attachment_service),
):
    token = await service.renew_token(attachment_id)
    attachment = await service.get(attachment_id)
    return ApiResponse(
        success=True,
        message="Token renewed",
        data=TokenResponse(attachment_id=attachment_id, token=token, expires_at=attachment.expires_at),
    )


@router.delete("/attachments/{attachment_id}/token", response_model=ApiResponse[None])
async def revoke_token(
    attachment_id: str,
    service: AttachmentService = Depends(get_attachment_service),
):
    await service.revoke_token(attachment_id)
    return ApiResponse(success=True, message="Access revoked", data=None)


@router.get("/attachments/download")
async def download_attachment(
    token: str = Query(..., min_length=1),
    service: AttachmentService = Depends(get_attachment_service),
):
    """Download the original bytes of the attachment the token currently grants."""
    decision, attachment = await service.resolve_token(token)
    if not decision.granted or attachment is None:
        raise AuthorizationError(f"Access denied: {decision.reason}")
    attachment, content = await service.download(attachment.id)
    return Response(
        content=content,
        media_type=attachment.mime_type,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(attachment.original_name)}"
        },
    )


@router.post("/attachments/permanent", response_model=ApiResponse[MigrationResponse])
async def move_to_permanent(
    data: MoveToPermanentRequest,
    service: AttachmentService = Depends(get_attachment_service),
):
    """Move processed attachments to permanent storage; each item succeeds or fails on its own."""
    if not data.attachment_ids:
        raise ValidationError("At least one attachment id is required", field="attachment_ids")
    report = await service.move_to_permanent(data.attachment_ids)
    return ApiResponse(
        success=True,
        message=f"{len(report.moved)} moved, {len(report.failed)} failed",
        data=MigrationResponse(moved=report.moved, skipped=report.skipped, failed=report.failed),
    )
