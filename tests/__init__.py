# Test suite
