from src.core.maintenance.repository import SettingsRepository
from src.core.maintenance.service import MaintenanceService, MaintenanceStatus

__all__ = ["MaintenanceService", "MaintenanceStatus", "SettingsRepository"]
