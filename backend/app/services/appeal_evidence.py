"""
Evidencia adjunta a las apelaciones de baneo.

Las imágenes se validan con Pillow, se guardan fuera de cualquier carpeta
pública y solo se sirven mediante URLs firmadas con caducidad.
"""
import os
import secrets
from pathlib import Path

from flask import current_app, url_for
from itsdangerous import BadSignature, URLSafeTimedSerializer
from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

from ..models import utcnow
from .errors import BanAppealError

EVIDENCE_SALT = "ban-appeal-evidence"
EVIDENCE_ENDPOINT = "api.ban_appeal_evidence"

# Formato real detectado por Pillow -> extensión con la que se guarda
IMAGE_FORMATS = {"JPEG": "jpg", "PNG": "png", "GIF": "gif", "WEBP": "webp"}
ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp"}

MIN_DIMENSION = 50
MAX_DIMENSION = 8000
MAX_ASPECT_RATIO = 10


def evidence_dir():
    return Path(current_app.config["BAN_APPEAL_EVIDENCE_DIR"])


def _stream_size(file):
    stream = file.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def validate_evidence(file):
    """Valida extensión, tamaño, formato real y dimensiones.

    Devuelve la extensión que corresponde al formato detectado, sin fiarse del
    nombre enviado por el cliente.
    """
    filename = secure_filename(file.filename or "")
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if extension not in ALLOWED_EXTENSIONS:
        raise BanAppealError("Tipo de archivo no permitido. Solo se aceptan imágenes (JPEG, PNG, GIF, WebP).")

    max_bytes = int(current_app.config.get("BAN_APPEAL_EVIDENCE_MAX_BYTES", 5 * 1024 * 1024))
    size = _stream_size(file)
    if size == 0:
        raise BanAppealError("El archivo de evidencia está vacío.")
    if size > max_bytes:
        raise BanAppealError(
            f"El archivo excede el tamaño máximo permitido de {max_bytes // (1024 * 1024)}MB."
        )

    try:
        with Image.open(file.stream) as image:
            image_format = image.format
            width, height = image.size
            image.verify()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise BanAppealError("El archivo no es una imagen válida o está corrupto.") from exc
    finally:
        file.stream.seek(0)

    if image_format not in IMAGE_FORMATS:
        raise BanAppealError("Tipo de archivo no permitido. Solo se aceptan imágenes (JPEG, PNG, GIF, WebP).")
    if width < MIN_DIMENSION or height < MIN_DIMENSION:
        raise BanAppealError(
            f"La imagen es demasiado pequeña. Dimensiones mínimas: {MIN_DIMENSION}x{MIN_DIMENSION} píxeles."
        )
    if width > MAX_DIMENSION or height > MAX_DIMENSION:
        raise BanAppealError(
            f"La imagen es demasiado grande. Dimensiones máximas: {MAX_DIMENSION}x{MAX_DIMENSION} píxeles."
        )
    if max(width, height) / min(width, height) > MAX_ASPECT_RATIO:
        raise BanAppealError("La relación de aspecto de la imagen es inválida.")

    return IMAGE_FORMATS[image_format]


def store_evidence(file, user_id, extension):
    """Guarda el archivo con nombre aleatorio y devuelve su ruta relativa."""
    now = utcnow()
    relative = f"{user_id}/{now:%Y}/{now:%m}/{secrets.token_hex(32)}.{extension}"
    target = evidence_dir() / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    file.save(str(target))

    current_app.logger.info(
        "Evidencia de apelación guardada",
        extra={
            "event": "ban_appeal.evidence_stored",
            "user_id": str(user_id),
            "path": relative,
            "size": target.stat().st_size,
        },
    )
    return relative


def evidence_exists(relative_path):
    if not relative_path:
        return False
    return (evidence_dir() / relative_path).is_file()


def delete_evidence(relative_path):
    if not relative_path:
        return False
    try:
        (evidence_dir() / relative_path).unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        current_app.logger.warning(
            "No se pudo borrar la evidencia: %s", exc,
            extra={"event": "ban_appeal.evidence_delete_failed", "path": relative_path},
        )
        return False


def _serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=EVIDENCE_SALT)


def build_evidence_token(appeal):
    return _serializer().dumps({"appeal_id": str(appeal.id)})


def load_evidence_token(token):
    """Id de la apelación firmada en ``token``; None si la firma es inválida o caducó."""
    max_age = int(current_app.config.get("BAN_APPEAL_EVIDENCE_URL_MINUTES", 120)) * 60
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadSignature:
        return None
    if not isinstance(data, dict):
        return None
    return data.get("appeal_id")


def get_evidence_url(appeal):
    if not appeal.evidence_path:
        return None
    return url_for(EVIDENCE_ENDPOINT, token=build_evidence_token(appeal))
