"""
Lexicon Schemas

- resolve.py: SchemaResolver, discovering a schema from its NSID
  (DNS TXT, DID document, repository host, schema record)
- validate.py: LexiconValidator, structural validation of records
"""
