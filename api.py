import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import settings
from database import get_db_connection
from library import InvalidStateError, Library, NotFoundError, ValidationError

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


library: Optional[Library] = None


def get_library() -> Library:
    """Dependency returning the shared Library, created on first use."""
    global library
    if library is None:
        library = Library(db_file=settings.db_file, seed=settings.seed_on_startup)
    return library


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_library()
    yield
    if library:
        library.close()


app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Models ---
# Fees are Decimal internally and plain JSON numbers on the wire
Money = Annotated[float, BeforeValidator(lambda v: float(v) if isinstance(v, Decimal) else v)]


class CamelModel(BaseModel):
    """JSON bodies use camelCase; snake_case is accepted on input too."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenreModel(CamelModel):
    id: int
    name: str


class MaterialTypeModel(CamelModel):
    id: int
    name: str
    checkout_days: int


class PatronModel(CamelModel):
    id: int
    first_name: str
    last_name: str
    address: str
    email: str
    is_active: bool


class MaterialModel(CamelModel):
    id: int
    name: str
    material_type_id: int
    genre_id: int
    out_of_circulation_since: Optional[datetime] = None
    material_type: Optional[MaterialTypeModel] = None
    genre: Optional[GenreModel] = None


class CheckoutModel(CamelModel):
    id: int
    material_id: int
    patron_id: int
    checkout_date: datetime
    return_date: Optional[datetime] = None
    paid: bool = False
    late_fee: Optional[Money] = None
    material: Optional[MaterialModel] = None
    patron: Optional[PatronModel] = None


class MaterialDetailModel(MaterialModel):
    checkouts: List[CheckoutModel] = []


class PatronDetailModel(PatronModel):
    checkouts: List[CheckoutModel] = []
    balance: Money = 0


class MaterialCreateModel(CamelModel):
    name: str = Field(..., description="Title of the material")
    material_type_id: int
    genre_id: int


class PatronCreateModel(CamelModel):
    first_name: str
    last_name: str
    address: str
    email: str


class PatronUpdateModel(CamelModel):
    email: Optional[str] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None


class CheckoutCreateModel(CamelModel):
    material_id: int


# --- Helper Functions ---
def _raise_http(error: Exception):
    """Translate a circulation error into the matching HTTP status."""
    if isinstance(error, NotFoundError):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InvalidStateError, ValidationError)):
        raise HTTPException(status_code=400, detail=str(error))
    raise error


# --- Health ---
@app.get("/health")
def health(lib: Library = Depends(get_library)):
    """Lightweight health check with a quick database probe."""
    db_ok = True
    try:
        conn = get_db_connection(lib.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception:
        logger.exception("Database health check failed")
        db_ok = False
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat(), "db": db_ok}


# --- Materials ---
@app.get("/materials", response_model=List[MaterialModel])
def get_materials(
    material_type_id: Optional[int] = Query(None, alias="materialTypeId", description="Filter by material type"),
    genre_id: Optional[int] = Query(None, alias="genreId", description="Filter by genre"),
    lib: Library = Depends(get_library),
):
    """Materials in circulation, optionally filtered by type and genre."""
    return [MaterialModel(**m) for m in lib.list_materials(material_type_id, genre_id)]


@app.get("/materials/available", response_model=List[MaterialModel])
def get_available_materials(lib: Library = Depends(get_library)):
    """Materials in circulation that are not checked out."""
    return [MaterialModel(**m) for m in lib.list_available_materials()]


@app.get("/materials/{material_id}", response_model=MaterialDetailModel)
def get_material(material_id: int, lib: Library = Depends(get_library)):
    try:
        return MaterialDetailModel(**lib.get_material(material_id))
    except NotFoundError as e:
        _raise_http(e)


@app.post("/materials", response_model=MaterialDetailModel, status_code=201)
def add_material(payload: MaterialCreateModel, response: Response, lib: Library = Depends(get_library)):
    try:
        material = lib.add_material(payload.name, payload.material_type_id, payload.genre_id)
    except (NotFoundError, ValidationError) as e:
        _raise_http(e)
    response.headers["Location"] = f"/materials/{material['id']}"
    return MaterialDetailModel(**material)


@app.put("/materials/{material_id}", status_code=204)
def remove_material(material_id: int, lib: Library = Depends(get_library)):
    """Take a material out of circulation."""
    try:
        lib.remove_material(material_id)
    except NotFoundError as e:
        _raise_http(e)
    return Response(status_code=204)


# --- Reference data ---
@app.get("/materialtypes", response_model=List[MaterialTypeModel])
def get_material_types(lib: Library = Depends(get_library)):
    return [MaterialTypeModel(**t.to_dict()) for t in lib.list_material_types()]


@app.get("/genres", response_model=List[GenreModel])
def get_genres(lib: Library = Depends(get_library)):
    return [GenreModel(**g.to_dict()) for g in lib.list_genres()]


# --- Patrons ---
@app.get("/patrons", response_model=List[PatronModel])
def get_patrons(lib: Library = Depends(get_library)):
    return [PatronModel(**p.to_dict()) for p in lib.list_patrons()]


@app.post("/patrons", response_model=PatronModel, status_code=201)
def add_patron(payload: PatronCreateModel, response: Response, lib: Library = Depends(get_library)):
    try:
        patron = lib.add_patron(payload.first_name, payload.last_name, payload.address, payload.email)
    except ValidationError as e:
        _raise_http(e)
    response.headers["Location"] = f"/patrons/{patron.id}"
    return PatronModel(**patron.to_dict())


@app.get("/patrons/{patron_id}", response_model=PatronDetailModel)
def get_patron(patron_id: int, lib: Library = Depends(get_library)):
    """A patron with checkouts, materials, material types and balance."""
    try:
        return PatronDetailModel(**lib.get_patron(patron_id))
    except NotFoundError as e:
        _raise_http(e)


@app.put("/patrons/deactivate/{patron_id}", status_code=204)
def deactivate_patron(patron_id: int, lib: Library = Depends(get_library)):
    try:
        lib.deactivate_patron(patron_id)
    except NotFoundError as e:
        _raise_http(e)
    return Response(status_code=204)


@app.put("/patrons/{patron_id}", status_code=204)
def update_patron(patron_id: int, update: PatronUpdateModel, lib: Library = Depends(get_library)):
    """Update a patron's email, address and/or active flag."""
    try:
        lib.update_patron(patron_id, email=update.email, address=update.address, is_active=update.is_active)
    except (NotFoundError, ValidationError) as e:
        _raise_http(e)
    return Response(status_code=204)


@app.post("/patrons/{patron_id}/checkouts", response_model=CheckoutModel, status_code=201)
def checkout_material(patron_id: int, payload: CheckoutCreateModel, response: Response,
                      lib: Library = Depends(get_library)):
    try:
        checkout = lib.checkout_material(patron_id, payload.material_id)
    except NotFoundError as e:
        _raise_http(e)
    response.headers["Location"] = f"/checkouts/{checkout['id']}"
    return CheckoutModel(**checkout)


# --- Checkouts ---
@app.get("/checkouts", response_model=List[CheckoutModel])
def get_checkouts(lib: Library = Depends(get_library)):
    return [CheckoutModel(**c) for c in lib.list_checkouts()]


@app.get("/checkouts/overdue", response_model=List[CheckoutModel])
def get_overdue_checkouts(lib: Library = Depends(get_library)):
    """Open checkouts held past their loan period."""
    return [CheckoutModel(**c) for c in lib.list_overdue()]


@app.get("/checkouts/{checkout_id}", response_model=CheckoutModel)
def get_checkout(checkout_id: int, lib: Library = Depends(get_library)):
    try:
        return CheckoutModel(**lib.get_checkout(checkout_id))
    except NotFoundError as e:
        _raise_http(e)


@app.put("/checkouts/return/{checkout_id}", status_code=204)
def return_checkout(checkout_id: int, lib: Library = Depends(get_library)):
    try:
        lib.return_checkout(checkout_id)
    except (NotFoundError, InvalidStateError) as e:
        _raise_http(e)
    return Response(status_code=204)


@app.put("/checkouts/pay/{checkout_id}", status_code=204)
def pay_checkout(checkout_id: int, lib: Library = Depends(get_library)):
    try:
        lib.pay_checkout(checkout_id)
    except NotFoundError as e:
        _raise_http(e)
    return Response(status_code=204)
