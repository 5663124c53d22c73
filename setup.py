from setuptools import setup, find_packages

setup(
    name="stronghold-notifications",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "scripts", "alembic", "alembic.*"]),
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy>=2.0",
        "alembic",
        "psycopg2-binary",
        "python-dotenv",
        "pydantic>=2",
        "pydantic-settings",
        "kombu>=5.3",
        "amqp",
        "prometheus_client",
        "prometheus-fastapi-instrumentator",
        "pytest",
        "httpx",
    ],
)
