from setuptools import setup, find_packages

setup(
    name="json4ai",
    version="1.0.0",
    packages=find_packages(exclude=['tests', 'tests.*', 'scripts']),
    install_requires=[
        'pandas',
        'firebase-admin',
        'requests',
        'stripe',
        'pydantic>=2',
        'python-dotenv'
    ],
    extras_require={
        'test': ['pytest']
    },
)
