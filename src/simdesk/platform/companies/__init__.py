"""Companies and their employees."""

from simdesk.platform.companies.models import Company, Employee

__all__ = ["Company", "Employee"]
