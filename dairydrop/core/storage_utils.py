# dairydrop/core/storage_utils.py

import uuid

from dairydrop.core.config import get_settings
from dairydrop.core.supabase_client import supabase_admin


def upload_to_storage(path: str, file_bytes: bytes, content_type: str) -> str:
    """
    Upload raw bytes to Supabase Storage and return a public URL.

    Args:
        path: Full object path inside the bucket.
              Example: "refunds/<refund_id>/<uuid>.jpg"
        file_bytes: File content in bytes.
        content_type: MIME type stored with the object.

    Raises:
        Any exception raised by Supabase client if upload fails.
    """
    bucket = supabase_admin().storage.from_(get_settings().STORAGE_BUCKET)
    bucket.upload(path, file_bytes, {"content-type": content_type, "upsert": "true"})
    return bucket.get_public_url(path)


def delete_from_storage(paths: list[str]) -> None:
    """
    Remove objects from the bucket by their paths, e.g. uploads whose
    database row was never written.
    """
    if paths:
        supabase_admin().storage.from_(get_settings().STORAGE_BUCKET).remove(paths)


def generate_filename(ext: str) -> str:
    """
    Generate a random filename using UUID4, e.g. "<uuid4>.png".
    """
    return f"{uuid.uuid4()}.{ext}"
