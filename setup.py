import setuptools

# Read the long description from README.md
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setuptools.setup(
    name="undaf",
    version="0.1.0",
    description="A Python library for decoding NAIF SPICE DAF kernels (SPK, CK, binary PCK)",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: Astronomy",
        "Topic :: Software Development :: Libraries",
    ],
    package_dir={"": "lib"},
    py_modules=["undaf"],
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.15.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "undaf=undaf:main",
        ],
    },
)
