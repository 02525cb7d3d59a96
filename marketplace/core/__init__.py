from marketplace.core.config import settings
from marketplace.core.database import get_db, Base, AsyncSessionLocal
