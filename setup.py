from setuptools import find_namespace_packages, setup

setup(
    name="slidecast-backend",
    version="0.1.0",
    packages=find_namespace_packages(include=["shared*", "services*", "models*"]),
    py_modules=["app", "bootloader", "database"],
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy>=2.0",
        "pydantic>=2",
        "aiohttp",
        "python-dotenv",
        "PyYAML",
        "boto3",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
    include_package_data=True,
    package_data={"shared": ["pipeline.yaml"]},
    description="Backend package for SlideCast (generation jobs and asset publishing)",
    author="Andreas Malathouras",
    author_email="steelstridertgm@gmail.com",
)
