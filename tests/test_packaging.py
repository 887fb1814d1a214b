import re
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def test_readme_is_the_project_readme():
    text = (ROOT / "pyproject.toml").read_text(encoding="utf-8")
    declared = re.findall(r'^readme\s*=\s*"([^"]+)"', text, flags=re.M)
    assert declared == ["README.md"]
    assert "markbook-engine" in (ROOT / "README.md").read_text(encoding="utf-8")
