from setuptools import setup, find_packages
from pathlib import Path

readme_path = Path(__file__).parent / "README.md"
if readme_path.exists():
    long_description = readme_path.read_text(encoding="utf-8")
else:
    long_description = "Closure table maintenance for tree-structured data, using set-based SQL through SQLAlchemy."

setup(
    name="closure_table",
    version="0.1.0",
    description="Closure table maintenance for tree-structured data, using set-based SQL through SQLAlchemy",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=[
        "sqlalchemy>=2.0.0",
        "pyyaml>=6.0",
        "jsonschema>=4.20.0",
    ],
    extras_require={
        "dev": [
            "pytest",
            "coverage",
            "hypothesis",
            "networkx>=3.0",  # Reference tree for closure property tests
        ],
        "postgres": ["psycopg2-binary>=2.9"],
    },
)
