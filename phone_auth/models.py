from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class UseCase(str, Enum):
    GET_PHONE_NUMBER = "GetPhoneNumber"
    VERIFY_PHONE_NUMBER = "VerifyPhoneNumber"


class Strategy(str, Enum):
    SAME_DEVICE = "ts43"
    DESKTOP = "desktop"
    REDIRECT = "link"

    @classmethod
    def from_wire(cls, value: Any) -> "Strategy":
        v = str(value or "").strip().lower()
        aliases = {"qr": cls.DESKTOP, "redirect": cls.REDIRECT, "same_device": cls.SAME_DEVICE}
        if v in aliases:
            return aliases[v]
        return cls(v)

    @property
    def out_of_band(self) -> bool:
        return self is not Strategy.SAME_DEVICE


class Plmn(BaseModel):
    mcc: str
    mnc: str


class ConsentData(BaseModel):
    consent_text: Optional[str] = None
    policy_link: Optional[str] = None
    policy_text: Optional[str] = None


class PrepareRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    use_case: UseCase
    phone_number: Optional[str] = None
    plmn: Optional[Plmn] = None
    consent_data: Optional[ConsentData] = None


class ProcessRequest(BaseModel):
    use_case: UseCase
    session: Dict[str, Any]
    credential: Any

    @property
    def session_key(self) -> Optional[str]:
        key = self.session.get("session_key")
        return str(key) if key else None


class CompleteRequest(BaseModel):
    session_key: str
    agg_code: str
