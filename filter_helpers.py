from typing import Optional

VALID_LOAN_STATUSES = {"OPEN", "CLOSED"}
VALID_ASSET_STATUSES = {"EN_STOCK", "PRETE", "HS", "REPARATION"}


def blank_to_none(value: Optional[str]) -> Optional[str]:
    if value == "":
        return None
    return value


def normalize_loan_status(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    status = status.upper()
    if status in VALID_LOAN_STATUSES:
        return status
    return None


def normalize_asset_status(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    status = status.upper()
    if status in VALID_ASSET_STATUSES:
        return status
    return None
