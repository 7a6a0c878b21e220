"""Setup script for NGO Donation Payments."""

from setuptools import setup, find_packages

setup(
    name="ngo-payments",
    version="1.0.0",
    description="ECPay checkout, callback handling and donation reconciliation for an NGO platform",
    author="NGO Platform",
    python_requires=">=3.10",
    packages=find_packages(include=["ngo_payments", "ngo_payments.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "httpx>=0.27.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ngo-payments-recovery=ngo_payments.workers.settlement_recovery:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
