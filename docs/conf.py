# Configuration file for the Sphinx documentation builder.
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import sys
import tomllib
from pathlib import Path

# Make the culturehub package importable for autodoc
sys.path.insert(0, str(Path(__file__).parent.parent))

# -- Project information -----------------------------------------------------

project = "Culture Hub"
copyright = "2026, Culture Hub contributors"
author = "Culture Hub contributors"

# Version comes from pyproject.toml
with open(Path(__file__).parent.parent / "pyproject.toml", "rb") as f:
    release = tomllib.load(f)["project"]["version"]
version = release

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
    "sphinx.ext.intersphinx",
    "sphinx_autodoc_typehints",
    "myst_parser",
]

source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}

exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]
master_doc = "index"

myst_enable_extensions = ["colon_fence", "deflist"]
myst_heading_anchors = 3

# -- HTML output options -----------------------------------------------------

html_theme = "furo"
html_title = f"Culture Hub {release}"
html_theme_options = {"navigation_with_keys": True}

# -- Autodoc configuration ---------------------------------------------------

# Importing culturehub.main builds an app from the environment; keep autodoc
# on the library modules listed in index.md.
autodoc_default_options = {
    "members": True,
    "member-order": "bysource",
    "undoc-members": True,
    "exclude-members": "__weakref__,model_config",
}

autodoc_typehints = "description"
autodoc_typehints_description_target = "documented"

# The codebase uses numpy-style "Parameters / Returns / Raises" sections.
napoleon_google_docstring = False
napoleon_numpy_docstring = True
napoleon_use_rtype = True
napoleon_attr_annotations = True

# -- Intersphinx configuration -----------------------------------------------

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "httpx": ("https://www.python-httpx.org", None),
    "pydantic": ("https://docs.pydantic.dev/latest", None),
}
