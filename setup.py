from setuptools import setup, find_packages

setup(
    name="quarnetgof",
    version="0.1.0",
    description="Quartet-based goodness-of-fit test of phylogenetic networks under the network coalescent",
    package_dir={"": "quarnetgof"},
    packages=find_packages("quarnetgof"),
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.10",
        "networkx>=3.0",
        "treeswift>=1.1",
    ],
    extras_require={
        "validation": ["msprime>=1.2"],
        "dev": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "quarnetgof=quarnetgof.cli:main",
        ],
    },
)
