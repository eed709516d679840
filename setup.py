from setuptools import setup, find_namespace_packages

setup(
    name="stackforge",
    version="0.1.0",
    description="Dependency-ordered CloudFormation stack lifecycle management",
    # Subpackages carry no __init__.py.
    packages=find_namespace_packages(where="src", include=["stackforge", "stackforge.*"]),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "boto3>=1.28",
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "structlog>=23.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "stackforge=stackforge.CLI.main:main",
        ],
    },
)
