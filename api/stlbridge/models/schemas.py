from __future__ import annotations
from typing import Literal, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field

class ImportStlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stl_url: Optional[str] = Field(None, alias="stlUrl", description="Remote STL location")
    file_name: Optional[str] = Field(None, alias="fileName")
    source: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

class JobSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: Literal["pending", "downloading", "processing", "completed", "failed"]
    source: str
    file_name: str = Field(..., alias="fileName")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    imported_at: str = Field(..., alias="importedAt")
    updated_at: str = Field(..., alias="updatedAt")
    error: Optional[str] = None
    file_path: Optional[str] = Field(None, alias="filePath")

class ImportResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    import_id: str = Field(..., alias="importId")
    message: Optional[str] = None
    job: JobSnapshot

class JobStatusResponse(BaseModel):
    success: bool
    job: JobSnapshot
    progress: int = 0

class ErrorResponse(BaseModel):
    success: Literal[False] = False
    error: str
