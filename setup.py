from setuptools import setup, find_packages

setup(
    name="posregistry",
    version="0.1.0",
    description="Proof-of-service agent registry with settlement-driven reputation scoring",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={"posregistry": ["migrations/*.sql"]},
    install_requires=[
        "pynacl>=1.5.0",
        "base58>=2.1.0",
        "fastapi>=0.110",
        "pydantic>=2.5",
        "uvicorn>=0.27",
        "httpx>=0.27",
        "asyncpg>=0.29",
        "slowapi>=0.1.9",
        "python-json-logger>=3.1",
    ],
    extras_require={"dev": ["pytest>=7.0", "pytest-asyncio>=0.23"]},
    entry_points={"console_scripts": ["posregistry=posregistry.cli:main"]},
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Security :: Cryptography",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3",
    ],
    keywords="agent registry reputation did x402 settlement solana",
)
