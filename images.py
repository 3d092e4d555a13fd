import io
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional

import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError
from fastapi import UploadFile

from errors import GatewayError, ValidationError
from log import get_logger
from settings import (
    CLOUDINARY_API_KEY,
    CLOUDINARY_API_SECRET,
    CLOUDINARY_CLOUD_NAME,
    CLOUDINARY_FOLDER,
    MAX_UPLOAD_SIZE_MB,
)

logger = get_logger(__name__)

PRODUCTS_FOLDER = f"{CLOUDINARY_FOLDER}/products"
CATEGORIES_FOLDER = f"{CLOUDINARY_FOLDER}/categories"


@dataclass
class ImageFile:
    filename: str
    content_type: str
    content: bytes


def read_images(files: Optional[List[UploadFile]], max_count: int) -> List[ImageFile]:
    """Buffer uploaded files in memory, accepting images up to the size limit."""
    files = [f for f in (files or []) if f is not None and f.filename]
    if len(files) > max_count:
        raise ValidationError(f"You can upload at most {max_count} images")

    max_bytes = MAX_UPLOAD_SIZE_MB * 1024 * 1024
    images = []
    for upload in files:
        content_type = upload.content_type or ""
        if not content_type.startswith("image/"):
            raise ValidationError("Only image files are allowed!")
        content = upload.file.read(max_bytes + 1)
        if len(content) > max_bytes:
            raise ValidationError(f"Image {upload.filename} exceeds {MAX_UPLOAD_SIZE_MB}MB")
        images.append(ImageFile(filename=upload.filename, content_type=content_type, content=content))
    return images


class CloudinaryGateway:
    def __init__(self, cloud_name: str = CLOUDINARY_CLOUD_NAME, api_key: str = CLOUDINARY_API_KEY,
                 api_secret: str = CLOUDINARY_API_SECRET):
        for name, value in (
            ("CLOUDINARY_CLOUD_NAME", cloud_name),
            ("CLOUDINARY_API_KEY", api_key),
            ("CLOUDINARY_API_SECRET", api_secret),
        ):
            if not value or value.startswith("your_"):
                logger.warning(f"{name} is not configured. Image uploads will fail.")
        self.options = {
            "cloud_name": cloud_name,
            "api_key": api_key,
            "api_secret": api_secret,
            "secure": True,
        }

    def upload(self, image: ImageFile, folder: str) -> Dict[str, str]:
        try:
            result = cloudinary.uploader.upload(
                io.BytesIO(image.content),
                folder=folder,
                resource_type="image",
                **self.options,
            )
        except CloudinaryError as e:
            logger.error(f"Image upload failed for {image.filename}: {e}")
            raise GatewayError(str(e) or "Error uploading image")
        return {"url": result["secure_url"], "publicId": result["public_id"]}

    def delete(self, public_id: str) -> None:
        try:
            cloudinary.uploader.destroy(public_id, **self.options)
        except CloudinaryError as e:
            logger.error(f"Image delete failed for {public_id}: {e}")
            raise GatewayError(str(e) or "Error deleting image")


@lru_cache(maxsize=1)
def get_image_gateway() -> CloudinaryGateway:
    return CloudinaryGateway()
