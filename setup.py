"""
Setup script for package installation
"""
from setuptools import setup, find_packages

setup(
    name="mutuus_billing",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10,<3.14",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic>=2.5",
        "sqlalchemy>=2.0",
        "alembic>=1.13",
        "psycopg2-binary>=2.9",
        "stripe>=8.0",
        "requests>=2.31",
        "apscheduler>=3.10,<4",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "httpx>=0.25",
        ],
    },
    entry_points={
        "console_scripts": [
            "mutuus-billing=mutuus_billing.app:main",
        ],
    },
)
