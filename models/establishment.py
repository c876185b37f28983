from sqlalchemy import Column, BigInteger, String, Float, Text, DateTime, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, JSONType


class Establishment(Base):
    """
    One row per educational establishment, keyed by its CUE.

    Schema Design:
    - Well-known columns are typed and indexed for search
    - Every other source column (connectivity provider, install dates,
      status flags...) lives in ``extra_attributes`` under its normalised
      name, so new spreadsheet columns never need an ALTER TABLE
    - ``search_text`` is a denormalised, accent-free lowercase copy of
      the searchable fields, rebuilt on every upsert

    Field Mapping (normalised sheet header -> column):
    - cue -> cue (digits only)
    - predio -> predio
    - establecimiento -> establecimiento
    - distrito, ciudad, direccion -> same name
    - lat, lon -> lat, lon (decimal comma accepted, range checked)
    - fed_a_cargo, ambito, tipo_establecimiento, observaciones -> same name
    - anything else -> extra_attributes[<name>]
    """
    __tablename__ = "establishments"

    cue = Column(BigInteger, primary_key=True, autoincrement=False)

    # Core fields
    predio = Column(String(50), nullable=True, index=True)
    establecimiento = Column(String(500), nullable=True, index=True)
    distrito = Column(String(200), nullable=True, index=True)
    ciudad = Column(String(200), nullable=True)
    direccion = Column(String(500), nullable=True)

    # Geography
    lat = Column(Float, nullable=True)
    lon = Column(Float, nullable=True)

    # Classification
    fed_a_cargo = Column(String(200), nullable=True)
    ambito = Column(String(100), nullable=True)
    tipo_establecimiento = Column(String(200), nullable=True)
    observaciones = Column(Text, nullable=True)

    # Open-ended source columns
    extra_attributes = Column(JSONType, nullable=False, default=dict)

    # Search
    search_text = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    contacts = relationship(
        "Contact",
        back_populates="establishment",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Contact.id",
    )

    __table_args__ = (
        Index("idx_establishment_distrito_name", "distrito", "establecimiento"),
    )

    # Columns the loader writes directly; everything else goes to extra_attributes
    KNOWN_COLUMNS = (
        "predio",
        "establecimiento",
        "distrito",
        "ciudad",
        "direccion",
        "lat",
        "lon",
        "fed_a_cargo",
        "ambito",
        "tipo_establecimiento",
        "observaciones",
    )
