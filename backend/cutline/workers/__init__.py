# Workers module
