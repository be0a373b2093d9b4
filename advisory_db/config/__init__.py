# Configuration package for the advisory database
