import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vote_ledger.api import app  # noqa: E402

app.root_path = "/api"

handler = Mangum(app, lifespan="off")
