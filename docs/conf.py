"""Sphinx configuration for the authgate documentation."""

from __future__ import annotations

import os
import sys
from datetime import datetime

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)

from authgate.config import Settings  # noqa: E402

project = "authgate"
author = "Platform Team"
copyright = f"{datetime.now():%Y}, {author}"
release = Settings.version

master_doc = "index"
extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
    "sphinx_autodoc_typehints",
]

autodoc_typehints = "description"
autodoc_preserve_defaults = True
autodoc_member_order = "bysource"
autodoc_default_options = {"members": True, "show-inheritance": True}
# importing the repository module needs the libpq-backed driver, not a database
autodoc_mock_imports = ["psycopg", "psycopg_pool"]
napoleon_google_docstring = True
napoleon_numpy_docstring = True

exclude_patterns: list[str] = ["_build", "Thumbs.db", ".DS_Store"]

html_theme = "alabaster"
