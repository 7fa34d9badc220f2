import logging
import time
import uuid
from decimal import Decimal
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from . import config
from .db import get_db
from .auth import require_photographer
from .deps import get_storage, get_watermark
from .models import Album, Photo, Photographer
from .schemas import (
    AlbumCreate,
    AlbumOut,
    AlbumUpdate,
    AlbumPhotoLinkOut,
    AlbumWithPhotosOut,
    GalleryPhotoOut,
    UploadResultOut,
    UploadSummaryOut,
)
from .storage import ObjectStorage, StorageError
from .watermark import WatermarkClient, WatermarkError

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

router = APIRouter(tags=["catalog"])

ALLOWED_EXT = {".png", ".jpg", ".jpeg", ".webp"}


def _own_album(db: Session, album_id: str, photographer: Photographer) -> Album:
    album = db.scalar(
        select(Album).where(Album.id == album_id, Album.photographer_id == photographer.id)
    )
    if album is None:
        raise HTTPException(status_code=404, detail="Album not found")
    return album


def _album_out(album: Album, photo_count: int) -> AlbumOut:
    return AlbumOut(
        id=album.id,
        name=album.name,
        description=album.description or "",
        event_date=album.event_date,
        price_per_photo=album.price_per_photo,
        photo_count=photo_count,
    )


def _count_photos(db: Session, album_id: str) -> int:
    return db.scalar(select(func.count(Photo.id)).where(Photo.album_id == album_id)) or 0


@router.get("/albums", response_model=list[AlbumOut])
def list_albums(
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    counts = dict(
        db.execute(
            select(Photo.album_id, func.count(Photo.id))
            .join(Album, Photo.album_id == Album.id)
            .where(Album.photographer_id == photographer.id)
            .group_by(Photo.album_id)
        ).all()
    )
    albums = db.scalars(
        select(Album)
        .where(Album.photographer_id == photographer.id)
        .order_by(Album.event_date.desc())
    ).all()
    return [_album_out(a, counts.get(a.id, 0)) for a in albums]


@router.get("/albums-with-photos", response_model=list[AlbumWithPhotosOut])
def albums_with_photos(
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    albums = db.scalars(
        select(Album)
        .where(Album.photographer_id == photographer.id)
        .order_by(Album.event_date.desc())
        .options(selectinload(Album.photos))
    ).all()
    return [
        AlbumWithPhotosOut(
            id=a.id,
            name=a.name,
            description=a.description or "",
            event_date=a.event_date,
            price_per_photo=a.price_per_photo,
            photos=[
                AlbumPhotoLinkOut(id=p.id, public_watermarked_url=storage.public_url(p.watermarked_file_path))
                for p in sorted(a.photos, key=lambda p: p.id)
            ],
        )
        for a in albums
    ]


@router.post("/albums", response_model=AlbumOut, status_code=201)
def create_album(
    payload: AlbumCreate,
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    album = Album(
        photographer_id=photographer.id,
        name=payload.name,
        description=payload.description,
        event_date=payload.event_date,
        price_per_photo=payload.price_per_photo,
    )
    db.add(album)
    db.commit()
    db.refresh(album)
    return _album_out(album, 0)


@router.put("/albums/{album_id}", response_model=AlbumOut)
def update_album(
    album_id: str,
    payload: AlbumUpdate,
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    album = _own_album(db, album_id, photographer)

    if payload.name is not None:
        album.name = payload.name
    if payload.description is not None:
        album.description = payload.description
    if payload.event_date is not None:
        album.event_date = payload.event_date

    try:
        if payload.price_per_photo is not None:
            album.price_per_photo = payload.price_per_photo
            # existing photos follow the album price; order items keep their snapshot
            db.execute(
                update(Photo)
                .where(Photo.album_id == album.id)
                .values(price=payload.price_per_photo)
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise HTTPException(status_code=500, detail="Failed to update album")

    db.refresh(album)
    return _album_out(album, _count_photos(db, album.id))


@router.delete("/albums/{album_id}")
def delete_album(
    album_id: str,
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    album = _own_album(db, album_id, photographer)
    db.delete(album)
    db.commit()
    return {"ok": True}


@router.get("/albums/{album_id}/photos", response_model=list[GalleryPhotoOut])
def public_gallery(
    album_id: str,
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    if db.get(Album, album_id) is None:
        raise HTTPException(status_code=404, detail="Album not found")

    photos = db.scalars(select(Photo).where(Photo.album_id == album_id).order_by(Photo.id)).all()
    return [
        GalleryPhotoOut(
            id=p.id,
            price=p.price,
            student_code=p.student_code,
            watermarked_url=storage.public_url(p.watermarked_file_path),
        )
        for p in photos
    ]


@router.post("/albums/{album_id}/photos", response_model=UploadSummaryOut)
async def upload_photos(
    album_id: str,
    files: list[UploadFile] = File(...),
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
    watermark: WatermarkClient = Depends(get_watermark),
):
    album = _own_album(db, album_id, photographer)
    price = album.price_per_photo or photographer.default_price_per_photo or config.DEFAULT_PRICE_PER_PHOTO

    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")

    results: list[UploadResultOut] = []
    for file in files:
        filename = file.filename or "upload"
        ext = Path(filename).suffix.lower()
        if ext not in ALLOWED_EXT:
            results.append(UploadResultOut(original_name=filename, status="failed", error="Unsupported file type"))
            continue

        data = await file.read()
        if not data:
            results.append(UploadResultOut(original_name=filename, status="failed", error="Empty file"))
            continue

        stem = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"
        original_key = f"albums/{album.id}/original/{stem}{ext}"
        watermarked_key = f"albums/{album.id}/watermarked/{stem}.jpg"

        try:
            storage.upload_original(original_key, data, file.content_type or "application/octet-stream")
            marked = await watermark.apply(data, file.content_type or "")
            storage.upload_watermarked(watermarked_key, marked)

            photo = Photo(
                album_id=album.id,
                original_file_path=original_key,
                watermarked_file_path=watermarked_key,
                price=Decimal(price),
                file_metadata={
                    "original_name": filename,
                    "content_type": file.content_type,
                    "size": len(data),
                },
            )
            db.add(photo)
            db.commit()
            db.refresh(photo)
        except (StorageError, WatermarkError) as e:
            logger.warning("upload of %s failed: %s", filename, e)
            results.append(UploadResultOut(original_name=filename, status="failed", error=str(e)))
            continue
        except SQLAlchemyError:
            db.rollback()
            logger.exception("could not save photo %s", filename)
            results.append(UploadResultOut(original_name=filename, status="failed", error="Failed to save photo"))
            continue

        results.append(
            UploadResultOut(
                original_name=filename,
                status="success",
                photo_id=photo.id,
                watermarked_url=storage.public_url(watermarked_key),
            )
        )

    uploaded = sum(1 for r in results if r.status == "success")
    logger.info("album %s upload done uploaded=%s failed=%s", album.id, uploaded, len(results) - uploaded)
    return UploadSummaryOut(uploaded=uploaded, failed=len(results) - uploaded, results=results)


@router.delete("/photos/{photo_id}")
def delete_photo(
    photo_id: str,
    photographer: Photographer = Depends(require_photographer),
    db: Session = Depends(get_db),
):
    photo = db.scalar(
        select(Photo)
        .join(Album, Photo.album_id == Album.id)
        .where(Photo.id == photo_id, Album.photographer_id == photographer.id)
    )
    if photo is None:
        raise HTTPException(status_code=404, detail="Photo not found")
    db.delete(photo)
    db.commit()
    return {"ok": True}
