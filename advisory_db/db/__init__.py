# Document store package
