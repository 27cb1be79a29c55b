from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class CrystalIdentification(BaseModel):
    name: str
    variety: Optional[str] = None
    confidence: float = 0.0  # 0-1


class MetaphysicalProperties(BaseModel):
    healing_properties: List[str] = Field(default_factory=list)
    primary_chakras: List[str] = Field(default_factory=list)
    energy_type: Optional[str] = None  # grounding | energizing | calming
    element: Optional[str] = None      # earth | air | fire | water


class CrystalAnalysis(BaseModel):
    identification: CrystalIdentification
    description: str = ""
    metaphysical_properties: MetaphysicalProperties = Field(default_factory=MetaphysicalProperties)
    care_instructions: Dict[str, List[str]] = Field(default_factory=dict)
    model: str
    analysis_type: str  # initial | full
    estimated_cost: Optional[float] = None  # USD reported for the completed call
    latency_ms: Optional[int] = None
