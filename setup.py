import pathlib

from setuptools import find_packages, setup

here = pathlib.Path(__file__).parent

with (here / "README.rst").open("r", encoding="utf-8") as fo:
    long_description = fo.read()

metadatas = dict(
    name="pgdeadlock",
    version="0.1.0",
    description="PostgreSQL deadlock history from server logs",
    long_description=long_description,
    long_description_content_type="text/x-rst",
    license="PostgreSQL",
    keywords="postgresql deadlock log csvlog jsonlog pg_locks",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: PostgreSQL License",
        "Programming Language :: Python :: 3",
        "Topic :: Database",
    ],
    install_requires=[
        "psycopg2-binary",
        "sqlparse",
        "typing_extensions",
        "xxhash",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-mock",
        ],
    },
)


if __name__ == "__main__":
    setup(
        packages=find_packages(".", exclude=["tests", "tests.*"]),
        package_data={"pgdeadlock": ["py.typed"]},
        python_requires=">=3.8",
        **metadatas
    )
