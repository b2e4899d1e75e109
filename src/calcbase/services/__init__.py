"""Write-path services for CalcBase."""

from calcbase.services.field import FieldService
from calcbase.services.record import RecordService

__all__ = ["FieldService", "RecordService"]
