import asyncio
import logging
import threading
from typing import Dict, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .classifier import CategoryClassifier
from .config import get_settings
from .corrections import CorrectionMap, JsonFileKeyValueStore
from .errors import InvalidIntentError
from .file_gate import MAX_FILE_SIZE, UploadCandidate
from .langfuse_tracer import initialize_tracing
from .models import CommitResult, ImportSnapshot
from .orchestrator import ImportOrchestrator
from .persistence import JsonFileLedgerRepository, LedgerRepository

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Ledger Import API")

# CORS middleware for the frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

initialize_tracing()


class SelectAllRequest(BaseModel):
    selected: bool


class CategoryRequest(BaseModel):
    category: str


class CorrectionRequest(BaseModel):
    description: str
    category: str


class CommitResponse(BaseModel):
    result: CommitResult
    state: ImportSnapshot


class ImportRegistry:
    """One import orchestrator per owner, sharing the classifier and ledger."""

    def __init__(self, classifier: CategoryClassifier, repository: LedgerRepository):
        self.classifier = classifier
        self.repository = repository
        self._orchestrators: Dict[str, ImportOrchestrator] = {}
        self._lock = threading.Lock()

    def get(self, owner_id: str) -> ImportOrchestrator:
        with self._lock:
            if owner_id not in self._orchestrators:
                self._orchestrators[owner_id] = ImportOrchestrator(
                    owner_id, self.repository, classifier=self.classifier
                )
            return self._orchestrators[owner_id]


_registry: Optional[ImportRegistry] = None


async def get_registry() -> ImportRegistry:
    """Build the process-wide registry on first use."""
    global _registry
    if _registry is None:
        store = JsonFileKeyValueStore(settings.corrections_file)
        _registry = ImportRegistry(
            classifier=CategoryClassifier(CorrectionMap(store)),
            repository=JsonFileLedgerRepository(settings.ledger_file),
        )
    return _registry


def get_owner_id(x_owner_id: Optional[str] = Header(None)) -> str:
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return x_owner_id.strip()


async def get_orchestrator(
    owner_id: str = Depends(get_owner_id),
    registry: ImportRegistry = Depends(get_registry),
) -> ImportOrchestrator:
    return registry.get(owner_id)


@app.get("/")
def read_root():
    return {"message": "Ledger Import API"}


@app.get("/categories")
def get_categories(registry: ImportRegistry = Depends(get_registry)):
    """List the categories a transaction can be assigned"""
    return {"categories": registry.classifier.get_valid_categories()}


@app.get("/rules")
def get_rules(registry: ImportRegistry = Depends(get_registry)):
    """List the merchant classification rules"""
    return {"rules": [rule.to_dict() for rule in registry.classifier.get_rules()]}


@app.get("/import/state", response_model=ImportSnapshot)
async def get_import_state(orchestrator: ImportOrchestrator = Depends(get_orchestrator)):
    return orchestrator.snapshot()


@app.post("/import/file", response_model=ImportSnapshot)
async def upload_file(
    file: UploadFile = File(...),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Upload a statement and build the import preview"""
    candidate = None
    if file.filename:
        if file.size is not None and file.size > MAX_FILE_SIZE:
            # rejected by size alone; the body is never read
            candidate = UploadCandidate(name=file.filename, size=file.size)
        else:
            # one byte past the limit is enough for the size check to reject it
            contents = await file.read(MAX_FILE_SIZE + 1)
            candidate = UploadCandidate.from_bytes(file.filename, contents)

    try:
        return await orchestrator.select_file(candidate)
    except InvalidIntentError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.post("/import/rows/{index}/toggle", response_model=ImportSnapshot)
async def toggle_row(index: int, orchestrator: ImportOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.toggle_row(index)
    except InvalidIntentError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/import/select-all", response_model=ImportSnapshot)
async def select_all(
    request: SelectAllRequest, orchestrator: ImportOrchestrator = Depends(get_orchestrator)
):
    try:
        return orchestrator.select_all(request.selected)
    except InvalidIntentError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.put("/import/rows/{index}/category", response_model=ImportSnapshot)
async def set_category(
    index: int,
    request: CategoryRequest,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Override a row's category; the choice is remembered for later imports"""
    try:
        return orchestrator.set_category(index, request.category)
    except InvalidIntentError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/import/commit", response_model=CommitResponse)
async def commit_import(orchestrator: ImportOrchestrator = Depends(get_orchestrator)):
    """Import the selected rows into the ledger"""
    result = await orchestrator.commit()
    return CommitResponse(result=result, state=orchestrator.snapshot())


@app.post("/import/close", response_model=ImportSnapshot)
async def close_import(orchestrator: ImportOrchestrator = Depends(get_orchestrator)):
    return orchestrator.close()


@app.post("/corrections", dependencies=[Depends(get_owner_id)])
async def record_correction(
    request: CorrectionRequest,
    registry: ImportRegistry = Depends(get_registry),
):
    """Remember a category for a description"""
    recorded = await asyncio.to_thread(
        registry.classifier.record_correction, request.description, request.category
    )
    if not recorded:
        raise HTTPException(status_code=400, detail="Invalid description or category")
    return {"message": "Correction recorded", "category": request.category}
