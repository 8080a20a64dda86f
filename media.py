"""
Product image storage backed by Cloudinary.

Credentials come from CLOUDINARY_URL or the CLOUDINARY_CLOUD_NAME /
CLOUDINARY_API_KEY / CLOUDINARY_API_SECRET trio.
"""
import asyncio
import logging
import os
from typing import Dict, List

import cloudinary
import cloudinary.uploader
from dotenv import load_dotenv
from fastapi import UploadFile
from fastapi.concurrency import run_in_threadpool

load_dotenv()

logger = logging.getLogger(__name__)

MEDIA_FOLDER = os.getenv("MEDIA_FOLDER", "waste-to-wonder/products")
MAX_IMAGES = 5

if os.getenv("CLOUDINARY_CLOUD_NAME"):
    cloudinary.config(
        cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME"),
        api_key=os.getenv("CLOUDINARY_API_KEY"),
        api_secret=os.getenv("CLOUDINARY_API_SECRET"),
        secure=True,
    )


class MediaUploadError(Exception):
    pass


def upload_image(upload: UploadFile, folder: str = MEDIA_FOLDER) -> Dict[str, str]:
    try:
        result = cloudinary.uploader.upload(upload.file, folder=folder, resource_type="image")
    except Exception as e:
        logger.error("Upload of %s failed: %s", upload.filename, e)
        raise MediaUploadError(f"Image upload failed for {upload.filename}") from e
    logger.info("Uploaded %s as %s", upload.filename, result.get("public_id"))
    return {"url": result["secure_url"], "public_id": result["public_id"]}


async def upload_images(files: List[UploadFile], folder: str = MEDIA_FOLDER) -> List[Dict[str, str]]:
    """Upload every file concurrently; any failure fails the whole batch.

    Images that did upload before the failure are left in place.
    """
    if not files:
        return []
    jobs = [run_in_threadpool(upload_image, f, folder) for f in files]
    return list(await asyncio.gather(*jobs))


def delete_images(public_ids: List[str]) -> List[str]:
    """Destroy remote images one by one, carrying on past failures.

    Returns the public ids that could not be destroyed.
    """
    failed = []
    for public_id in public_ids:
        if not public_id:
            continue
        try:
            cloudinary.uploader.destroy(public_id)
        except Exception as e:
            logger.error("Destroy of %s failed: %s", public_id, e)
            failed.append(public_id)
            continue
        logger.info("Destroyed image %s", public_id)
    return failed
