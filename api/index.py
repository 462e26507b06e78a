import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from accrual.api import create_app

# Each serverless invocation is short-lived; periodic jobs run in the long-lived server only.
app = create_app(run_background=False, root_path="/api")

handler = Mangum(app, lifespan="off")
