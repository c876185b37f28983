"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime


class CamelModel(BaseModel):
    """Accept both camelCase aliases and field names."""
    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Admin Auth Schemas
# ============================================================================

class LoginRequest(BaseModel):
    password: str


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    expires: str = Field(..., description="UTC date the token is valid for")


class VerifyTokenRequest(BaseModel):
    token: Optional[str] = None


class VerifyTokenResponse(BaseModel):
    success: bool = True
    valid: bool


class AuthenticatedRequest(CamelModel):
    auth_key: Optional[str] = Field(None, alias="authKey")


# ============================================================================
# Migration Schemas
# ============================================================================

class MigrateRequest(AuthenticatedRequest):
    """Body of POST /admin/migrate"""
    action: Literal["getState", "start", "continue", "reset"]
    batch_size: Optional[int] = Field(None, alias="batchSize", ge=1)
    start_index: Optional[int] = Field(None, alias="startIndex", ge=0)

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "action": "continue",
                "batchSize": 10,
                "startIndex": 20,
                "authKey": "<daily admin token>"
            }
        }
    )


class MigrationStateInfo(BaseModel):
    """Checkpoint as exposed on the admin surface"""
    last_processed_id: int
    completed: bool
    total_records: int
    processed_records: int
    progress_percent: float
    started_at: Optional[str] = None
    last_updated: Optional[str] = None


class MigrateStateResponse(BaseModel):
    success: bool = True
    state: MigrationStateInfo


class MigrateStartResponse(BaseModel):
    success: bool = True
    totalRecords: int


class MigrateContinueResponse(BaseModel):
    success: bool = True
    processedInBatch: int
    totalProcessed: int
    totalRecords: int
    progress: float
    nextBatchStart: Optional[int]
    completed: bool
    results: Dict[str, Any]


class MigrateResetResponse(BaseModel):
    success: bool = True
    deleted: Dict[str, int] = Field(default_factory=dict)


class MigrateSheetRequest(AuthenticatedRequest):
    """Body of POST /admin/migrate-sheet; sheetId overrides SPREADSHEET_ID"""
    sheet_id: Optional[str] = Field(None, alias="sheetId")
    sheet_name: str = Field(..., alias="sheetName", min_length=1)
    batch_size: Optional[int] = Field(None, alias="batchSize", ge=1)
    table: Optional[Literal["establishments", "contacts"]] = None


class MigrateSheetResponse(BaseModel):
    success: bool = True
    processed: int
    inserted: int
    updated: int
    failed: int = 0
    dropped: int = 0
    batches: int = 0
    addedColumns: List[str] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    message: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class VerifyMigrationResponse(BaseModel):
    success: bool = True
    migrationState: MigrationStateInfo
    recordCounts: Dict[str, int]


class SheetListResponse(BaseModel):
    success: bool = True
    sheets: List[str]
    source: Dict[str, Any] = Field(default_factory=dict)


class UpdateCoordinatesRequest(AuthenticatedRequest):
    cue: int = Field(..., gt=0)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lon: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def check_pair(self):
        if (self.lat is None) != (self.lon is None):
            raise ValueError("lat and lon must be provided together")
        return self


class UpdateCoordinatesResponse(BaseModel):
    success: bool = True
    cue: int
    lat: Optional[float]
    lon: Optional[float]


class MigrationJobRequest(AuthenticatedRequest):
    """Body of POST /admin/migration-job"""
    action: Literal["start", "pause", "resume", "reset", "status"]
    batch_size: Optional[int] = Field(None, alias="batchSize", ge=1)


class MigrationJobResponse(BaseModel):
    success: bool = True
    job: Dict[str, Any]


# ============================================================================
# Public Search Schemas
# ============================================================================

class ContactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    nombre: Optional[str] = None
    apellido: Optional[str] = None
    cargo: Optional[str] = None
    telefono: Optional[str] = None
    correo_institucional: Optional[str] = None


class SchoolResponse(BaseModel):
    """One establishment with its first contact"""
    cue: int
    predio: Optional[str] = None
    establecimiento: Optional[str] = None
    distrito: Optional[str] = None
    ciudad: Optional[str] = None
    direccion: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    fed_a_cargo: Optional[str] = None
    ambito: Optional[str] = None
    tipo_establecimiento: Optional[str] = None
    observaciones: Optional[str] = None
    extra_attributes: Dict[str, Any] = Field(default_factory=dict)
    contact: Optional[ContactResponse] = None
    score: Optional[int] = Field(None, description="Similarity to the query, 0-100")

    @classmethod
    def from_model(cls, school, score: Optional[int] = None) -> "SchoolResponse":
        contacts = school.contacts or []
        return cls(
            cue=school.cue,
            predio=school.predio,
            establecimiento=school.establecimiento,
            distrito=school.distrito,
            ciudad=school.ciudad,
            direccion=school.direccion,
            lat=school.lat,
            lon=school.lon,
            fed_a_cargo=school.fed_a_cargo,
            ambito=school.ambito,
            tipo_establecimiento=school.tipo_establecimiento,
            observaciones=school.observaciones,
            extra_attributes=school.extra_attributes or {},
            contact=ContactResponse.model_validate(contacts[0]) if contacts else None,
            score=score,
        )


class SchoolDetailResponse(SchoolResponse):
    contacts: List[ContactResponse] = Field(default_factory=list)


class SharedSiteSchool(SchoolResponse):
    sharedWith: List[int] = Field(default_factory=list)


class SearchResponse(BaseModel):
    query: str
    total: int
    results: List[SchoolResponse]


class SchoolsByPredioResponse(BaseModel):
    predio: str
    schools: List[SharedSiteSchool]


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    migration: Optional[MigrationStateInfo] = None
    job_status: Optional[str] = None
    source: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.job_status == "failed":
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "job_status": "completed",
                "migration": {
                    "last_processed_id": 23,
                    "completed": True,
                    "total_records": 23,
                    "processed_records": 23,
                    "progress_percent": 100.0
                }
            }
        }
    )
