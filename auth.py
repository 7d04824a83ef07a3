# auth.py
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES
from database import get_db
from models import Profile
from record_store import RecordStore
from schemas import PatientRecord, ProfileRecord, ProviderRecord

# Use bcrypt via passlib
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="login")

# -----------------------------
# Password helpers
# -----------------------------
def get_password_hash(password: str) -> str:
    truncated_password = password[:72]
    return pwd_context.hash(truncated_password)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    truncated_password = plain_password[:72]
    return pwd_context.verify(truncated_password, hashed_password)

# -----------------------------
# JWT helpers
# -----------------------------
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

def create_session_token(profile: Profile) -> str:
    return create_access_token(data={"sub": profile.email, "ver": profile.session_version})

# -----------------------------
# Current session
# -----------------------------
@dataclass
class CurrentSession:
    """The signed-in user, resolved once per request and passed to the routes."""

    profile: ProfileRecord
    provider: Optional[ProviderRecord] = None
    patient: Optional[PatientRecord] = None

    @property
    def user_type(self) -> str:
        return self.profile.user_type

    @property
    def email(self) -> str:
        return self.profile.email


def load_session(db: Session, profile: Profile) -> CurrentSession:
    records = RecordStore(db)
    session = CurrentSession(profile=ProfileRecord.model_validate(profile))
    if profile.user_type == "doctor":
        providers = records.select("HealthcareProviders", {"email": profile.email}, limit=1)
        session.provider = providers[0] if providers else None
    else:
        patients = records.select("Patients", {"email": profile.email}, limit=1)
        session.patient = patients[0] if patients else None
    return session


async def get_current_session(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> CurrentSession:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    profile = db.query(Profile).filter(Profile.email == email).first()
    if profile is None:
        raise credentials_exception
    # tokens issued before the last sign-out are no longer valid
    if payload.get("ver") != profile.session_version:
        raise credentials_exception
    return load_session(db, profile)

# -----------------------------
# Role guards
# -----------------------------
async def require_doctor(session: CurrentSession = Depends(get_current_session)) -> CurrentSession:
    if session.user_type != "doctor":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Doctor access required")
    if session.provider is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Complete your doctor profile first")
    return session

async def require_patient(session: CurrentSession = Depends(get_current_session)) -> CurrentSession:
    if session.user_type != "patient":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Patient access required")
    if session.patient is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient record not found")
    return session
