from sqlalchemy import Column, BigInteger, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, JSONType, BigIntegerId


class Contact(Base):
    """
    A contact person attached to an establishment.

    Identity within one establishment is ``contact_key``: the lower-cased
    institutional email when present, otherwise ``nombre|apellido``.
    Upserts are keyed by (cue, contact_key).
    """
    __tablename__ = "contacts"

    id = Column(BigIntegerId, primary_key=True, autoincrement=True)

    cue = Column(
        BigInteger,
        ForeignKey("establishments.cue", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    contact_key = Column(String(320), nullable=False)

    nombre = Column(String(200), nullable=True)
    apellido = Column(String(200), nullable=True)
    cargo = Column(String(200), nullable=True)
    telefono = Column(String(100), nullable=True)
    correo_institucional = Column(String(320), nullable=True)

    extra_attributes = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    establishment = relationship("Establishment", back_populates="contacts")

    __table_args__ = (
        UniqueConstraint("cue", "contact_key", name="uq_contact_cue_key"),
    )

    KNOWN_COLUMNS = (
        "nombre",
        "apellido",
        "cargo",
        "telefono",
        "correo_institucional",
    )
