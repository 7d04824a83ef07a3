# models.py
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from database import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    user_type = Column(String, nullable=False)  # "doctor" | "patient"
    first_login = Column(Boolean, default=True, nullable=False)
    # bumped on sign-out; tokens carrying an older version are rejected
    session_version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class HealthcareProvider(Base):
    __tablename__ = "HealthcareProviders"

    provider_id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    specialization = Column(String, nullable=True)
    email = Column(String, unique=True, index=True, nullable=False)

    patients = relationship("Patient", back_populates="doctor")


class Patient(Base):
    __tablename__ = "Patients"

    patient_id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    age = Column(Integer, nullable=True)
    gender = Column(String, nullable=True)
    email = Column(String, index=True, nullable=True)
    phone = Column(String, nullable=True)
    doctor_id = Column(Integer, ForeignKey("HealthcareProviders.provider_id"), index=True)

    doctor = relationship("HealthcareProvider", back_populates="patients")
    scans = relationship("BrainScan", back_populates="patient", cascade="all, delete-orphan")
    reports = relationship("Report", back_populates="patient", cascade="all, delete-orphan")


class BrainScan(Base):
    __tablename__ = "BrainScans"

    image_id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("Patients.patient_id", ondelete="CASCADE"), index=True, nullable=False)
    image_type = Column(String, nullable=True)
    date = Column(DateTime, default=datetime.utcnow)
    image_url = Column(String, nullable=False)

    patient = relationship("Patient", back_populates="scans")
    reports = relationship("Report", back_populates="scan", cascade="all, delete-orphan")


class Report(Base):
    __tablename__ = "Reports"

    report_id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("Patients.patient_id", ondelete="CASCADE"), index=True, nullable=False)
    image_id = Column(Integer, ForeignKey("BrainScans.image_id", ondelete="CASCADE"), index=True, nullable=False)
    report_url = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    patient = relationship("Patient", back_populates="reports")
    scan = relationship("BrainScan", back_populates="reports")
