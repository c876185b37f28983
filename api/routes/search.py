"""
Public search endpoints: full-text search, autocomplete, school detail and
establishments sharing a site (predio).
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy import select, and_, or_
from api.dependencies import get_db, get_settings, get_suggestion_cache
from api.search import SuggestionCache, level_suggestions, similarity
from core.config import Settings
from ingestion.transformers.field_mapper import normalize_text
from models.establishment import Establishment
from schemas.api import (
    SchoolDetailResponse,
    SchoolResponse,
    SchoolsByPredioResponse,
    SearchResponse,
    SharedSiteSchool,
    ContactResponse,
)
from typing import List
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Search"])

DEFAULT_LISTING = 10
NAME_SUGGESTIONS = 5
DISTRICT_SUGGESTIONS = 3
MAX_SUGGESTIONS = 10
NAME_CANDIDATES = 50


@router.get("/search", response_model=SearchResponse)
async def search_schools(
    request: Request,
    query: str = Query("", description="CUE, name, district, city or address fragment"),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Search establishments.

    - A numeric query matches the CUE exactly or the name as a substring.
    - Any other query matches every word against the accent-free search text.
    - Results are ranked by name similarity and carry their first contact.
    """
    request_id = getattr(request.state, "request_id", "-")
    q = query.strip()
    stmt = select(Establishment).options(selectinload(Establishment.contacts))

    if not q:
        result = await db.execute(stmt.order_by(Establishment.cue).limit(DEFAULT_LISTING))
        schools = result.scalars().all()
        return SearchResponse(
            query=q,
            total=len(schools),
            results=[SchoolResponse.from_model(s) for s in schools],
        )

    normalized = normalize_text(q)
    if q.isdigit():
        stmt = stmt.where(or_(
            Establishment.cue == int(q),
            Establishment.establecimiento.ilike(f"%{q}%"),
        ))
    else:
        words = normalized.split()
        stmt = stmt.where(and_(*[
            Establishment.search_text.contains(word, autoescape=True) for word in words
        ]))

    result = await db.execute(stmt.limit(settings.SEARCH_RESULT_LIMIT))
    schools = result.scalars().all()

    scored = []
    for school in schools:
        if q.isdigit() and school.cue == int(q):
            score = 100
        else:
            score = similarity(normalized, normalize_text(school.establecimiento))
        scored.append((score, school))
    scored.sort(key=lambda pair: (-pair[0], pair[1].establecimiento or ""))

    logger.info(f"[{request_id}] GET /search query={q!r} -> {len(scored)} results")

    return SearchResponse(
        query=q,
        total=len(scored),
        results=[SchoolResponse.from_model(school, score) for score, school in scored],
    )


@router.get("/autocomplete", response_model=List[str])
async def autocomplete(
    query: str = Query("", description="Partial text typed by the user"),
    db: AsyncSession = Depends(get_db),
    cache: SuggestionCache = Depends(get_suggestion_cache),
):
    """Suggest school names, districts and education levels."""
    q = query.strip()
    if len(q) < 2:
        return []

    cached = cache.get(q)
    if cached is not None:
        return cached

    normalized = normalize_text(q)

    name_rows = await db.execute(
        select(Establishment.establecimiento)
        .where(Establishment.search_text.contains(normalized, autoescape=True))
        .order_by(Establishment.establecimiento)
        .limit(NAME_CANDIDATES)
    )
    names = []
    for name in name_rows.scalars():
        if name and normalized in normalize_text(name) and name not in names:
            names.append(name)
        if len(names) >= NAME_SUGGESTIONS:
            break

    district_rows = await db.execute(
        select(Establishment.distrito)
        .where(Establishment.distrito.is_not(None))
        .distinct()
        .order_by(Establishment.distrito)
    )
    districts = [
        f"Distrito: {d}" for d in district_rows.scalars()
        if normalized in normalize_text(d)
    ][:DISTRICT_SUGGESTIONS]

    suggestions = (names + districts + level_suggestions(normalized))[:MAX_SUGGESTIONS]
    cache.put(q, suggestions)
    return suggestions


@router.get("/schools/{cue}", response_model=SchoolDetailResponse)
async def get_school(cue: int, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Establishment)
        .options(selectinload(Establishment.contacts))
        .where(Establishment.cue == cue)
    )
    school = result.scalar_one_or_none()
    if school is None:
        raise HTTPException(status_code=404, detail=f"Establecimiento {cue} no encontrado")

    return SchoolDetailResponse(
        **SchoolResponse.from_model(school).model_dump(),
        contacts=[ContactResponse.model_validate(c) for c in school.contacts],
    )


@router.get("/schools-by-predio", response_model=SchoolsByPredioResponse)
async def schools_by_predio(
    predio: str = Query("", description="Site identifier shared by co-located schools"),
    db: AsyncSession = Depends(get_db),
):
    """List the establishments on one site, each naming the others it shares it with."""
    predio = predio.strip()
    if not predio:
        raise HTTPException(status_code=400, detail="El parámetro predio es obligatorio")

    result = await db.execute(
        select(Establishment)
        .options(selectinload(Establishment.contacts))
        .where(Establishment.predio == predio)
        .order_by(Establishment.cue)
    )
    schools = result.scalars().all()
    cues = [s.cue for s in schools]

    shared = [
        SharedSiteSchool(
            **SchoolResponse.from_model(school).model_dump(),
            sharedWith=[c for c in cues if c != school.cue],
        )
        for school in schools
    ]

    return SchoolsByPredioResponse(predio=predio, schools=shared)
