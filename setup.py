"""invoice-agent-pipeline packaging setup."""

from setuptools import find_packages, setup

setup(
    name="invoice-agent-pipeline",
    version="0.1.0",
    description="Early-exit invoice processing pipeline on AWS Lambda: extraction, validation, "
    "tax compliance, fraud scoring and ledger coding with live progress events.",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "boto3>=1.28",
        "botocore>=1.31",
        "numpy>=1.24",
        "pandas>=2.0",
        "openpyxl>=3.1",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "moto[dynamodb,s3]>=5.0",
        ],
    },
)
