import sys
from pathlib import Path

# Insert project root so the top-level modules (relaxations, image_star, ...) are importable
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
