from plume.media.models import Backend, StoredAsset, UploadedAsset, UploadItem, UploadOutcome
from plume.media.promotion import LocalPromotionService
from plume.media.remote import RemoteUploadService
from plume.media.thumbnails import ThumbnailGenerator
from plume.media.validator import AssetValidator

__all__ = [
    "AssetValidator",
    "Backend",
    "LocalPromotionService",
    "RemoteUploadService",
    "StoredAsset",
    "ThumbnailGenerator",
    "UploadItem",
    "UploadOutcome",
    "UploadedAsset",
]
