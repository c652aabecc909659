import os
import sys
from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker
from fastapi.middleware.cors import CORSMiddleware

from .database import create_library_engine
from .jobs import JobManager
from .storage import ContentStore

__version__ = "1.0.0"

# --- Path Configuration ---
if os.getenv("GVSTORAGE_HOME"):
    # Explicit library location (tests, multiple libraries side by side).
    PROJECT_ROOT = os.path.abspath(os.environ["GVSTORAGE_HOME"])
elif getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the project root is where the executable is.
    PROJECT_ROOT = os.path.dirname(sys.executable)
else:
    # In development, __file__ is /gvstorage/__init__.py, so we go up one level to the project root.
    PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# --- Constants ---
STORAGE_DIR = os.path.join(PROJECT_ROOT, "storage")
EXPORTS_DIR = os.path.join(PROJECT_ROOT, "exports")
DATABASE_URL = f"sqlite:///{os.path.join(PROJECT_ROOT, 'database.db')}"
# How long an import waits for a conflict decision before skipping the asset.
CONFLICT_TIMEOUT_SECONDS = float(os.getenv("GVSTORAGE_CONFLICT_TIMEOUT", "300"))


# --- Application Initialization ---
app = FastAPI(
    title="gvstorage",
    description="A personal digital-asset library with whole-library backup and restore.",
    version=__version__,
)

os.makedirs(PROJECT_ROOT, exist_ok=True)
os.makedirs(EXPORTS_DIR, exist_ok=True)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Database Configuration (SQLite) ---
engine = create_library_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# --- Content storage and background jobs ---
content_store = ContentStore(STORAGE_DIR)
job_manager = JobManager()

# --- Database Session Dependency ---
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Import routes after the app and db setup are complete
from . import routes
