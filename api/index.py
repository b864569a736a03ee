from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from affiliates.api import create_app
from affiliates.settings import settings

app = create_app(settings, root_path="/api")

handler = Mangum(app)
