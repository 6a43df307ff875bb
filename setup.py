"""Setup.py file
"""
import setuptools

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setuptools.setup(
    name="quick-bc",
    version="0.1.0",
    description="Barcode and UMI extraction, correction and counting for paired sequencing reads",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests"]),
    entry_points={"console_scripts": ["quick-bc = quick_bc.__main__:main"]},
    classifiers=(
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ),
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.1.0",
        "umi_tools>=1.1.4",
        "Levenshtein>=0.21",
        "pyyaml>=6.0",
        "polars>=0.20.3",
        "pysam>=0.21",
    ],
    extras_require={
        "test": [
            "pytest>=6.0.0",
            "pytest-dependency>=0.4.0",
        ],
    },
    python_requires=">=3.10",
    package_data={"quick_bc": ["chemistries/*.yaml"]},
)
