import hashlib
import logging
import time

import requests

from config import Config

logger = logging.getLogger(__name__)

UPLOAD_URL = "https://api.cloudinary.com/v1_1/{cloud_name}/image/upload"


class UploadError(Exception):
    pass


def is_configured():
    return bool(Config.CLOUDINARY_CLOUD_NAME and Config.CLOUDINARY_API_KEY and Config.CLOUDINARY_API_SECRET)


def sign_params(params, api_secret):
    """Cloudinary signature: sorted key=value pairs joined by & with the secret appended, SHA-1."""
    to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params) if params[k] not in (None, ""))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


def upload_image(content, filename, mimetype, folder):
    """
    Upload image bytes and return (secure_url, public_id).

    Raises:
        UploadError: when Cloudinary is not configured or rejects the upload
    """
    if not is_configured():
        raise UploadError("Image uploads are not configured")

    params = {
        "folder": folder,
        "timestamp": int(time.time()),
        "use_filename": "true",
        "unique_filename": "true",
        "overwrite": "false",
    }
    data = dict(params)
    data["api_key"] = Config.CLOUDINARY_API_KEY
    data["signature"] = sign_params(params, Config.CLOUDINARY_API_SECRET)

    url = UPLOAD_URL.format(cloud_name=Config.CLOUDINARY_CLOUD_NAME)
    try:
        response = requests.post(
            url,
            data=data,
            files={"file": (filename or "upload", content, mimetype)},
            timeout=Config.UPLOAD_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.error("Cloudinary upload failed: %s", e)
        raise UploadError("Image upload failed") from e

    if response.status_code != 200:
        try:
            message = response.json().get("error", {}).get("message")
        except ValueError:
            message = response.text
        logger.error("Cloudinary rejected upload (%s): %s", response.status_code, message)
        raise UploadError(message or "Image upload failed")

    body = response.json()
    logger.info("Uploaded image to Cloudinary public_id=%s", body.get("public_id"))
    return body.get("secure_url"), body.get("public_id")
