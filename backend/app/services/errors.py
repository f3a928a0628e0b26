"""Excepciones del dominio traducidas a respuestas JSON por las rutas."""
from flask import jsonify


class ServiceError(Exception):
    """Error de negocio con mensaje para el usuario y código HTTP."""

    status_code = 400

    def __init__(self, message, status_code=None, *, code=None, payload=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code
        self.payload = dict(payload or {})

    def to_response(self):
        body = {"error": self.message}
        if self.code:
            body["code"] = self.code
        body.update(self.payload)
        return jsonify(body), self.status_code


class ImpersonationError(ServiceError):
    status_code = 403


class BanError(ServiceError):
    status_code = 422


class BanAppealError(ServiceError):
    status_code = 422
