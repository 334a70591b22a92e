from setuptools import setup, find_packages

setup(
    name="localvault",
    version="2.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["localvault_cli"],
    include_package_data=True,
    install_requires=[
        "cryptography==42.0.5",
        "pyotp==2.9.0",
        "rich==13.7.0",
        "python-dotenv==1.0.1",
        "httpx==0.27.0",
    ],
    extras_require={
        "test": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": ["localvault=localvault_cli:main"],
    },
    python_requires=">=3.8",
)
