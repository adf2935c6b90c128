from setuptools import setup, find_namespace_packages

setup(
    name="lakestack",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["lakestack", "lakestack.*"]),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "aiohttp>=3.8",
        "aioboto3>=11.0",
        "botocore>=1.29",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg>=0.27",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
        "dev": ["pytest>=7.0", "black>=23.0"],
    },
    entry_points={
        "console_scripts": [
            "lakestack=lakestack.CLI.main:main",
        ],
    },
)
