from setuptools import setup

setup(
    name = "ramsem",
    version = "1.0",
    description = "RAM structural equation models with analytic gradients in pytorch",
    license = "GPL3",
    packages = ["ramsem"],
    python_requires = ">=3.9",
    install_requires = ["torch", "numpy", "scipy", "pandas"],
    extras_require = {"test": ["pytest"]},
    zip_safe = False,
    include_package_data = True
)
