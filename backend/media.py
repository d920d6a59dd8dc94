import logging
import os
from typing import Dict, Iterable, Optional

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError
from werkzeug.utils import secure_filename

from errors import UploadFailure, ValidationError

module_logger = logging.getLogger(__name__)


class MediaUploader:
    """Pushes product images to Cloudinary and reports where they landed."""

    def __init__(
        self,
        cloud_name: str = "",
        api_key: str = "",
        api_secret: str = "",
        folder: str = "products",
        allowed_extensions: Iterable[str] = ("png", "jpg", "jpeg", "gif", "webp"),
        logger: Optional[logging.Logger] = None,
    ):
        self._logger = logger or module_logger
        self.folder = folder
        self.allowed_extensions = {extension.lower() for extension in allowed_extensions}
        self.configured = bool(cloud_name and api_key and api_secret)
        if self.configured:
            cloudinary.config(
                cloud_name=cloud_name,
                api_key=api_key,
                api_secret=api_secret,
                secure=True,
            )

    @classmethod
    def from_config(cls, config, logger: Optional[logging.Logger] = None) -> "MediaUploader":
        return cls(
            cloud_name=config.get("CLOUDINARY_CLOUD_NAME", ""),
            api_key=config.get("CLOUDINARY_API_KEY", ""),
            api_secret=config.get("CLOUDINARY_API_SECRET", ""),
            folder=config.get("CLOUDINARY_FOLDER", "products"),
            allowed_extensions=config.get("UPLOAD_ALLOWED_EXTENSIONS", ()),
            logger=logger,
        )

    def allowed_image_extension(self, filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        return bool(extension) and extension in self.allowed_extensions

    def check_file(self, image_file) -> str:
        filename = secure_filename(getattr(image_file, "filename", "") or "")
        if not filename:
            raise ValidationError("Please choose a valid file name.")
        if not self.allowed_image_extension(filename):
            raise ValidationError(
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
            )
        return filename

    def upload(self, image_file) -> Dict[str, object]:
        filename = self.check_file(image_file)
        if not self.configured:
            raise UploadFailure("Image uploads are not configured on this server.")

        try:
            result = cloudinary.uploader.upload(
                image_file.stream,
                folder=self.folder,
                resource_type="image",
            )
        except CloudinaryError as exc:
            self._logger.error("Cloudinary upload of %s failed: %s", filename, exc)
            raise UploadFailure(error=str(exc))

        return {
            "public_id": result.get("public_id"),
            "url": result.get("secure_url") or result.get("url"),
            "width": result.get("width"),
            "height": result.get("height"),
            "format": result.get("format"),
        }

    def discard(self, public_id: str) -> None:
        if not public_id or not self.configured:
            return
        try:
            cloudinary.uploader.destroy(public_id, resource_type="image")
        except CloudinaryError as exc:
            self._logger.warning("Could not remove orphaned upload %s: %s", public_id, exc)
