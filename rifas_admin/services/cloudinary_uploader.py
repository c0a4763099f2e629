from typing import Optional

import cloudinary
from cloudinary.uploader import upload as cloudinary_upload
from fastapi import UploadFile

from rifas_admin.core.errors import ValidationFailed
from rifas_admin.core.settings import settings
from rifas_admin.core.logger import get_logger

logger = get_logger(__name__)

# Carpetas por tipo de imagen
PURCHASES_FOLDER = "rifas/purchases"
RAFFLES_FOLDER = "rifas/raffles"
WINNERS_FOLDER = "rifas/winners"
PAYMENT_METHODS_FOLDER = "rifas/payment_methods"

MAX_IMAGE_BYTES = 5 * 1024 * 1024


def is_configured() -> bool:
    return bool(settings.cloudinary_cloud_name and settings.cloudinary_api_key and settings.cloudinary_api_secret)


def upload_bytes(content: bytes, folder: str) -> str:
    """Sube bytes de imagen y devuelve secure_url. RuntimeError si algo falla."""
    if not is_configured():
        raise RuntimeError("Cloudinary no configurado (faltan variables de entorno)")
    if not content:
        raise RuntimeError("Archivo vacío")
    if len(content) > MAX_IMAGE_BYTES:
        raise RuntimeError("La imagen no debe pesar más de 5MB")

    cloudinary.config(
        cloud_name=settings.cloudinary_cloud_name,
        api_key=settings.cloudinary_api_key,
        api_secret=settings.cloudinary_api_secret,
        secure=True,
    )

    try:
        res = cloudinary_upload(content, folder=folder, resource_type="image")
    except Exception as e:
        logger.error("Fallo subiendo a Cloudinary (%s): %s", folder, e)
        raise RuntimeError(f"Cloudinary upload failed: {e}") from e

    url = res.get("secure_url") or res.get("url")
    if not url:
        raise RuntimeError("Cloudinary no devolvió URL")
    logger.info("Imagen subida a %s", folder)
    return url


async def upload_file(file: Optional[UploadFile], folder: str = PURCHASES_FOLDER) -> Optional[str]:
    """Sube un UploadFile; None si no vino archivo."""
    if file is None:
        return None
    content = await file.read()
    if not content:
        return None
    if file.content_type and not file.content_type.startswith("image/"):
        raise ValidationFailed(f"El archivo {file.filename} no es una imagen.")
    return upload_bytes(content, folder)
