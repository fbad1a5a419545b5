__title__ = "CryptoPortfolio"
__version__ = "0.3.0"
