import logging
import os
from typing import Dict, Iterable, Mapping

import cloudinary
import cloudinary.uploader
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)


class MediaConfigurationError(RuntimeError):
    pass


class MediaUploadError(RuntimeError):
    pass


def is_configured(config: Mapping) -> bool:
    return all(
        config.get(key)
        for key in ("CLOUDINARY_CLOUD_NAME", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET")
    )


def configure(config: Mapping) -> bool:
    if not is_configured(config):
        logger.warning("Cloudinary environment variables not set. Image uploads will fail.")
        return False

    cloudinary.config(
        cloud_name=config["CLOUDINARY_CLOUD_NAME"],
        api_key=config["CLOUDINARY_API_KEY"],
        api_secret=config["CLOUDINARY_API_SECRET"],
        secure=True,
    )
    return True


def allowed_image_extension(filename: str, allowed: Iterable[str]) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in set(allowed)


def upload_image(image_file, config: Mapping) -> Dict[str, str]:
    if not is_configured(config):
        raise MediaConfigurationError("Cloudinary not configured")

    original_filename = secure_filename(getattr(image_file, "filename", "") or "")
    if not original_filename:
        raise ValueError("Please choose a valid file name.")

    if not allowed_image_extension(
        original_filename, config.get("ALLOWED_IMAGE_EXTENSIONS", ())
    ):
        raise ValueError(
            "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
        )

    try:
        result = cloudinary.uploader.upload(
            image_file.stream,
            folder=config.get("CLOUDINARY_FOLDER", "citadel-products"),
            resource_type="auto",
        )
    except Exception as exc:
        logger.error("Cloudinary upload failed for %s: %s", original_filename, exc)
        raise MediaUploadError("Upload failed") from exc

    return {"url": result["secure_url"], "public_id": result["public_id"]}


def delete_image(public_id: str, config: Mapping) -> None:
    if not is_configured(config):
        raise MediaConfigurationError("Cloudinary not configured")

    try:
        cloudinary.uploader.destroy(public_id)
    except Exception as exc:
        logger.error("Cloudinary delete failed for %s: %s", public_id, exc)
        raise MediaUploadError("Delete failed") from exc
