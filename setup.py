import setuptools

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setuptools.setup(
    name="opsis-symbolic-regression",
    version="0.1.0",
    description="Operator-induced symbolic search with inside-constant " \
                "refinement for interpretable regression.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=setuptools.find_packages(where="src"),

    # Classifiers help users find your project on PyPI
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],

    python_requires='>=3.8',

    # Core dependencies
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "scikit-learn",
        "sympy",
        "joblib",
        "matplotlib",
    ],

    extras_require={
        "units": ["pint"],
        "test": ["pytest", "pint"],
        "all": ["pint"],
    }
)
