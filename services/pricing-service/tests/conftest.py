import sys
from pathlib import Path

# Ensure `services/pricing-service` is on sys.path so `import app` works when
# running tests from the monorepo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
