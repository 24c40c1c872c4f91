from __future__ import annotations


# Stack template for a dedicated tenant table; uploaded once per environment.
PRIVATE_ACCOUNT_TEMPLATE = """AWSTemplateFormatVersion: '2010-09-09'
Description: Dedicated DynamoDB table for a private tenant account.

Parameters:
  AccountId:
    Type: String
  AccountName:
    Type: String
  Environment:
    Type: String
    Default: dev
  ProjectName:
    Type: String
    Default: app
  BillingMode:
    Type: String
    Default: PAY_PER_REQUEST
    AllowedValues: [PAY_PER_REQUEST, PROVISIONED]
  ReadCapacity:
    Type: Number
    Default: 5
  WriteCapacity:
    Type: Number
    Default: 5
  EnablePointInTimeRecovery:
    Type: String
    Default: 'true'
    AllowedValues: ['true', 'false']
  EnableDeletionProtection:
    Type: String
    Default: 'true'
    AllowedValues: ['true', 'false']
  EnableAutoScaling:
    Type: String
    Default: 'false'
    AllowedValues: ['true', 'false']

Conditions:
  IsProvisioned: !Equals [!Ref BillingMode, PROVISIONED]
  PITREnabled: !Equals [!Ref EnablePointInTimeRecovery, 'true']
  DeletionProtected: !Equals [!Ref EnableDeletionProtection, 'true']

Resources:
  AccountTable:
    Type: AWS::DynamoDB::Table
    DeletionPolicy: Retain
    UpdateReplacePolicy: Retain
    Properties:
      TableName: !Sub '${ProjectName}-${Environment}-${AccountId}'
      BillingMode: !Ref BillingMode
      DeletionProtectionEnabled: !If [DeletionProtected, true, false]
      ProvisionedThroughput: !If
        - IsProvisioned
        - ReadCapacityUnits: !Ref ReadCapacity
          WriteCapacityUnits: !Ref WriteCapacity
        - !Ref AWS::NoValue
      PointInTimeRecoverySpecification:
        PointInTimeRecoveryEnabled: !If [PITREnabled, true, false]
      SSESpecification:
        SSEEnabled: true
      StreamSpecification:
        StreamViewType: NEW_AND_OLD_IMAGES
      AttributeDefinitions:
        - AttributeName: PK
          AttributeType: S
        - AttributeName: SK
          AttributeType: S
        - AttributeName: GSI1PK
          AttributeType: S
        - AttributeName: GSI1SK
          AttributeType: S
        - AttributeName: entityType
          AttributeType: S
      KeySchema:
        - AttributeName: PK
          KeyType: HASH
        - AttributeName: SK
          KeyType: RANGE
      GlobalSecondaryIndexes:
        - IndexName: GSI1
          KeySchema:
            - AttributeName: GSI1PK
              KeyType: HASH
            - AttributeName: GSI1SK
              KeyType: RANGE
          Projection:
            ProjectionType: ALL
          ProvisionedThroughput: !If
            - IsProvisioned
            - ReadCapacityUnits: !Ref ReadCapacity
              WriteCapacityUnits: !Ref WriteCapacity
            - !Ref AWS::NoValue
        - IndexName: GSI-EntityType
          KeySchema:
            - AttributeName: entityType
              KeyType: HASH
            - AttributeName: SK
              KeyType: RANGE
          Projection:
            ProjectionType: ALL
          ProvisionedThroughput: !If
            - IsProvisioned
            - ReadCapacityUnits: !Ref ReadCapacity
              WriteCapacityUnits: !Ref WriteCapacity
            - !Ref AWS::NoValue
      Tags:
        - Key: AccountId
          Value: !Ref AccountId
        - Key: AccountName
          Value: !Ref AccountName
        - Key: Environment
          Value: !Ref Environment
        - Key: CloudType
          Value: private
        - Key: ManagedBy
          Value: tenantplane

  DataPlaneAccessRole:
    Type: AWS::IAM::Role
    Properties:
      RoleName: !Sub '${ProjectName}-${Environment}-${AccountId}-data'
      AssumeRolePolicyDocument:
        Version: '2012-10-17'
        Statement:
          - Effect: Allow
            Principal:
              AWS: !Sub 'arn:${AWS::Partition}:iam::${AWS::AccountId}:root'
            Action: sts:AssumeRole
      Policies:
        - PolicyName: tenant-table-access
          PolicyDocument:
            Version: '2012-10-17'
            Statement:
              - Effect: Allow
                Action:
                  - dynamodb:GetItem
                  - dynamodb:PutItem
                  - dynamodb:UpdateItem
                  - dynamodb:DeleteItem
                  - dynamodb:Query
                  - dynamodb:Scan
                  - dynamodb:BatchWriteItem
                  - dynamodb:TransactWriteItems
                Resource:
                  - !GetAtt AccountTable.Arn
                  - !Sub '${AccountTable.Arn}/index/*'

  TableNameParam:
    Type: AWS::SSM::Parameter
    Properties:
      Name: !Sub '/accounts/${AccountId}/dynamodb/table-name'
      Type: String
      Value: !Ref AccountTable

Outputs:
  TableName:
    Value: !Ref AccountTable
  TableArn:
    Value: !GetAtt AccountTable.Arn
  TableStreamArn:
    Value: !GetAtt AccountTable.StreamArn
  AccessRoleArn:
    Value: !GetAtt DataPlaneAccessRole.Arn
"""
