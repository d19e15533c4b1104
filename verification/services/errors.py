# verification/services/errors.py
from __future__ import annotations

from typing import Optional


class VerificationError(Exception):
    """Базовая ошибка верификации."""


class ProbeInvalid(VerificationError):
    """Снятый образец нельзя привести к сравнимому виду (нет лица, пустой отпечаток)."""


class StoreUnavailable(VerificationError):
    """Хранилище шаблонов недоступно: частичное решение невозможно."""


class ComparatorError(VerificationError):
    """Ошибка одного сравнения. Восстановимая: кандидат пропускается."""


class RemoteServiceError(ComparatorError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
