import sys

from backend.config import get_settings
from backend.db import get_engine, init_schema, seed_sample_data

# Create the application tables and the products/sales sample data
url = sys.argv[1] if len(sys.argv) > 1 else get_settings().database_url
engine = get_engine(url)
init_schema(engine)

if seed_sample_data(engine):
    print(f"Seeded {url} with sample products and sales")
else:
    print(f"{url} already has products; nothing seeded")
